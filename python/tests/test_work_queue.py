"""Tests for pipeline_core.scheduling.work_queue."""

import itertools
import logging

import pytest

from pipeline_core.exceptions_unified import QueueFullError
from pipeline_core.scheduling.work_queue import (
    DeadLetterEntry,
    QueueEntry,
    RejectionPolicy,
    TieBreak,
    WorkQueue,
)


@pytest.fixture
def queue():
    return WorkQueue()


def _drain(queue):
    out = []
    item_id = queue.dequeue()
    while item_id is not None:
        out.append(item_id)
        item_id = queue.dequeue()
    return out


class TestOrdering:

    @pytest.mark.parametrize("scores", list(itertools.permutations([25, 100, 50, 75])))
    def test_highest_score_first_regardless_of_insertion(self, scores):
        queue = WorkQueue()
        for score in scores:
            queue.enqueue(f"item-{score}", score)
        assert _drain(queue) == ["item-100", "item-75", "item-50", "item-25"]

    def test_fifo_tie_break(self, queue):
        for item_id in ("a", "b", "c"):
            queue.enqueue(item_id, 10)
        assert _drain(queue) == ["a", "b", "c"]

    def test_lifo_tie_break(self):
        queue = WorkQueue(TieBreak.LIFO)
        for item_id in ("a", "b", "c"):
            queue.enqueue(item_id, 10)
        assert _drain(queue) == ["c", "b", "a"]

    def test_empty_dequeue_returns_none(self, queue):
        assert queue.dequeue() is None
        assert queue.peek() is None

    def test_entries_in_dequeue_order(self, queue):
        queue.enqueue("low", 1)
        queue.enqueue("high", 9)
        assert [e.item_id for e in queue.entries()] == ["high", "low"]
        assert [e.item_id for e in queue] == ["high", "low"]
        assert len(queue) == 2


class TestMutation:

    def test_reenqueue_replaces_score(self, queue):
        queue.enqueue("a", 10)
        queue.enqueue("b", 20)
        queue.enqueue("a", 30)
        assert len(queue) == 2
        assert _drain(queue) == ["a", "b"]

    def test_reenqueue_keeps_queued_at(self, queue):
        first = queue.enqueue("a", 10)
        second = queue.enqueue("a", 50)
        assert second.queued_at == first.queued_at

    def test_remove(self, queue):
        queue.enqueue("a", 10)
        queue.enqueue("b", 5)
        assert queue.remove("a") is True
        assert queue.remove("a") is False
        assert "a" not in queue
        assert _drain(queue) == ["b"]

    def test_attempts_count_deliveries(self, queue):
        queue.enqueue("a", 10)
        queue.dequeue()
        entry = queue.enqueue("a", 10)
        assert entry.attempts == 1

    def test_clear(self, queue):
        queue.enqueue("a", 1)
        queue.clear()
        assert len(queue) == 0
        assert queue.dequeue() is None

    def test_restore_keeps_order(self, queue):
        entries = [QueueEntry("x", 5, attempts=2), QueueEntry("y", 5), QueueEntry("z", 9)]
        queue.restore(entries)
        assert [e.item_id for e in queue.entries()] == ["z", "x", "y"]
        assert queue.peek().item_id == "z"
        assert queue.entries()[1].attempts == 2

    def test_entry_round_trip(self):
        entry = QueueEntry("a", 7.5, queued_at="2024-01-01T00:00:00+00:00", attempts=1)
        assert QueueEntry.from_dict(entry.to_dict()) == entry

    def test_stale_records_are_compacted(self, queue):
        for score in range(500):
            queue.enqueue("a", score)
        queue.enqueue("b", 1000)
        assert len(queue._heap) <= 64
        assert _drain(queue) == ["b", "a"]


# ========================================================================
# BOUNDED QUEUE
# ========================================================================


def _full(policy, max_size=3, **kwargs):
    queue = WorkQueue(max_size=max_size, policy=policy, **kwargs)
    for item_id, score in (("a", 10), ("b", 30), ("c", 20)):
        queue.enqueue(item_id, score)
    return queue


class TestCapacity:

    def test_unbounded_by_default(self, queue):
        for i in range(2000):
            queue.enqueue(str(i), i)
        assert not queue.is_full
        assert queue.status().max_size is None

    def test_invalid_max_size(self):
        with pytest.raises(ValueError):
            WorkQueue(max_size=0)

    def test_reject_raises_when_full(self):
        queue = _full(RejectionPolicy.REJECT)
        with pytest.raises(QueueFullError) as exc_info:
            queue.enqueue("d", 99)
        assert exc_info.value.reason == "queue_full"
        assert exc_info.value.size == 3
        assert exc_info.value.max_size == 3
        assert "d" not in queue
        assert queue.dead_letter() == []

    def test_rescore_allowed_when_full(self):
        queue = _full(RejectionPolicy.REJECT)
        queue.enqueue("a", 50)
        assert queue.peek().item_id == "a"
        assert len(queue) == 3

    def test_dequeue_frees_room(self):
        queue = _full(RejectionPolicy.REJECT)
        queue.dequeue()
        queue.enqueue("d", 1)
        assert "d" in queue

    def test_drop_oldest_evicts_first_queued(self):
        queue = _full(RejectionPolicy.DROP_OLDEST)
        queue.enqueue("d", 5)
        assert "a" not in queue
        assert "d" in queue
        dead = queue.dead_letter()
        assert [d.item_id for d in dead] == ["a"]
        assert dead[0].reason == "dropped_for_newer"
        assert dead[0].entry.priority_score == 10

    def test_drop_lowest_evicts_lowest_score(self):
        queue = _full(RejectionPolicy.DROP_LOWEST_PRIORITY)
        queue.enqueue("d", 25)
        assert _drain(queue) == ["b", "d", "c"]
        assert [d.item_id for d in queue.dead_letter()] == ["a"]
        assert queue.dead_letter()[0].reason == "dropped_for_higher_priority"

    def test_drop_lowest_refuses_lower_or_equal_score(self):
        queue = _full(RejectionPolicy.DROP_LOWEST_PRIORITY)
        with pytest.raises(QueueFullError) as exc_info:
            queue.enqueue("d", 10)
        assert exc_info.value.reason == "lower_priority_than_queue"
        assert "a" in queue
        assert queue.dead_letter() == []

    def test_status_and_backpressure(self):
        queue = WorkQueue(max_size=10)
        for i in range(5):
            queue.enqueue(str(i), i)
        assert not queue.backpressure_active
        queue.enqueue("5", 5)
        status = queue.status()
        assert status.size == 6
        assert status.utilization == pytest.approx(0.6)
        assert status.backpressure_active
        assert status.to_dict()["dead_letter_size"] == 0

    def test_soft_limit_warns_once(self, caplog):
        queue = WorkQueue(max_size=5)
        with caplog.at_level(logging.WARNING, logger="pipeline_core.scheduling.work_queue"):
            for i in range(5):
                queue.enqueue(str(i), i)
        warnings = [r for r in caplog.records if "capacity" in r.getMessage()]
        assert len(warnings) == 1
        assert "4/5" in warnings[0].getMessage()

    def test_restore_accepts_more_than_max_size(self, caplog):
        queue = WorkQueue(max_size=1)
        with caplog.at_level(logging.WARNING):
            queue.restore([QueueEntry("x", 1), QueueEntry("y", 2)])
        assert len(queue) == 2
        assert "limited to 1" in caplog.text


class TestDeadLetter:

    def test_retry_requeues_and_removes_entry(self):
        queue = _full(RejectionPolicy.DROP_OLDEST)
        queue.enqueue("d", 5)
        queue.dequeue()
        assert queue.retry_dead_letter("a") is True
        assert "a" in queue
        assert queue.dead_letter() == []

    def test_retry_unknown_item(self, queue):
        assert queue.retry_dead_letter("ghost") is False

    def test_retry_into_full_queue_keeps_entry(self):
        queue = WorkQueue(max_size=1, policy=RejectionPolicy.DROP_LOWEST_PRIORITY)
        queue.enqueue("a", 1)
        queue.enqueue("b", 5)
        with pytest.raises(QueueFullError):
            queue.retry_dead_letter("a")
        assert [d.item_id for d in queue.dead_letter()] == ["a"]

    def test_dead_letter_is_capped(self):
        queue = WorkQueue(max_size=1, policy=RejectionPolicy.DROP_OLDEST, dead_letter_max_size=2)
        for item_id in "abcd":
            queue.enqueue(item_id, 1)
        assert [d.item_id for d in queue.dead_letter()] == ["b", "c"]
        assert queue.status().dead_letter_size == 2

    def test_clear_one_or_all(self):
        queue = WorkQueue(max_size=1, policy=RejectionPolicy.DROP_OLDEST)
        for item_id in "abc":
            queue.enqueue(item_id, 1)
        assert queue.clear_dead_letter("a") == 1
        assert queue.clear_dead_letter("a") == 0
        assert queue.clear_dead_letter() == 1
        assert queue.dead_letter() == []

    def test_dead_letter_entry_round_trip(self):
        dead = DeadLetterEntry(QueueEntry("a", 3, queued_at="2024-01-01T00:00:00+00:00"), "dropped_for_newer",
                               moved_at="2024-01-02T00:00:00+00:00")
        assert DeadLetterEntry.from_dict(dead.to_dict()) == dead
