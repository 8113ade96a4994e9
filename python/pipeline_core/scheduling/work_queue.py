"""Priority queue for work items waiting on a free worker.

Max-heap on priority score with a stable tie-break on insertion order.
Removal is lazy: stale heap entries are skipped on pop, and the heap is
rebuilt once stale records outnumber live ones.

A queue may be bounded.  When full, the rejection policy decides whether
the new item is refused (``QueueFullError``) or an existing entry is
moved to the dead letter queue to make room.
"""

from __future__ import annotations

import heapq
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pipeline_core.exceptions_unified import QueueFullError

logger = logging.getLogger(__name__)

# Heap size (stale + live) below which no compaction is attempted
_COMPACT_MIN_HEAP = 64


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class TieBreak(str, Enum):
    """Order among entries with equal score."""

    FIFO = "fifo"  # earlier insertion first
    LIFO = "lifo"  # later insertion first


class RejectionPolicy(str, Enum):
    """What a full queue does with one more item."""

    REJECT = "reject"
    DROP_OLDEST = "drop-oldest"
    DROP_LOWEST_PRIORITY = "drop-lowest-priority"


@dataclass
class QueueEntry:
    item_id: str
    priority_score: float
    queued_at: str = field(default_factory=_now)
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "priority_score": self.priority_score,
            "queued_at": self.queued_at,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueEntry":
        return cls(
            item_id=data["item_id"],
            priority_score=data["priority_score"],
            queued_at=data.get("queued_at") or _now(),
            attempts=data.get("attempts", 0),
        )


@dataclass
class DeadLetterEntry:
    """An entry evicted from a full queue."""

    entry: QueueEntry
    reason: str
    moved_at: str = field(default_factory=_now)

    @property
    def item_id(self) -> str:
        return self.entry.item_id

    def to_dict(self) -> Dict[str, Any]:
        return {**self.entry.to_dict(), "reason": self.reason, "moved_at": self.moved_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeadLetterEntry":
        return cls(
            entry=QueueEntry.from_dict(data),
            reason=data.get("reason", ""),
            moved_at=data.get("moved_at") or _now(),
        )


@dataclass(frozen=True)
class QueueStatus:
    size: int
    max_size: Optional[int]
    utilization: float
    backpressure_active: bool
    dead_letter_size: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "max_size": self.max_size,
            "utilization": self.utilization,
            "backpressure_active": self.backpressure_active,
            "dead_letter_size": self.dead_letter_size,
        }


class WorkQueue:
    """Items not yet assignable to a worker, highest score first.

    Re-enqueueing an item already in the queue replaces its score and
    moves it to the back of its tie group; it never counts against
    ``max_size``.

    Args:
        tie_break: Order among equal scores.
        max_size: Live entry limit, ``None`` for unbounded.
        policy: Behaviour when an enqueue would exceed ``max_size``.
        dead_letter_max_size: Evicted entries kept for inspection and
            retry; the oldest is discarded past this limit.
        backpressure_threshold: Utilization at which ``backpressure_active``
            turns on.
        soft_limit_ratio: Utilization at which a warning is logged.
    """

    def __init__(
        self,
        tie_break: TieBreak = TieBreak.FIFO,
        max_size: Optional[int] = None,
        policy: RejectionPolicy = RejectionPolicy.REJECT,
        dead_letter_max_size: int = 100,
        backpressure_threshold: float = 0.6,
        soft_limit_ratio: float = 0.8,
    ) -> None:
        if max_size is not None and max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.tie_break = TieBreak(tie_break)
        self.max_size = max_size
        self.policy = RejectionPolicy(policy)
        self.dead_letter_max_size = dead_letter_max_size
        self.backpressure_threshold = backpressure_threshold
        self.soft_limit_ratio = soft_limit_ratio
        self._heap: List[Tuple[float, int, str]] = []
        # item_id → (live entry, sequence of its live heap record)
        self._entries: Dict[str, Tuple[QueueEntry, int]] = {}
        self._delivered: Dict[str, int] = {}
        self._dead_letter: Dict[str, DeadLetterEntry] = {}
        self._counter = itertools.count()
        self._over_soft_limit = False

    def enqueue(self, item_id: str, priority_score: float) -> QueueEntry:
        """Add or re-score *item_id*.

        Raises:
            QueueFullError: the queue is at ``max_size`` and the policy
                refuses the item.
        """
        previous = self._entries.get(item_id)
        if previous is None and self.is_full:
            self._make_room(item_id, priority_score)
        entry = QueueEntry(
            item_id=item_id,
            priority_score=priority_score,
            attempts=self._delivered.get(item_id, 0),
        )
        if previous is not None:
            entry.queued_at = previous[0].queued_at
        self._push(entry)
        self._dead_letter.pop(item_id, None)
        self._check_soft_limit()
        return entry

    def restore(self, entries: List[QueueEntry], dead_letter: Optional[List[DeadLetterEntry]] = None) -> None:
        """Replace the contents with persisted entries, keeping their order.

        Persisted entries are taken as-is even past ``max_size``.
        """
        self.clear()
        for entry in entries:
            self._delivered[entry.item_id] = entry.attempts
            self._push(QueueEntry(**entry.to_dict()))
        for dead in dead_letter or []:
            self._dead_letter[dead.item_id] = dead
        if self.max_size is not None and len(self._entries) > self.max_size:
            logger.warning(
                "Restored %d queued item(s) into a queue limited to %d",
                len(self._entries), self.max_size,
            )
        self._check_soft_limit()

    def dequeue(self) -> Optional[str]:
        """Remove and return the highest-scoring item id, or ``None`` if empty."""
        entry = self._pop()
        if entry is None:
            return None
        self._delivered[entry.item_id] = self._delivered.get(entry.item_id, 0) + 1
        self._check_soft_limit()
        return entry.item_id

    def peek(self) -> Optional[QueueEntry]:
        self._discard_stale()
        if not self._heap:
            return None
        return self._entries[self._heap[0][2]][0]

    def remove(self, item_id: str) -> bool:
        """Drop *item_id* from the queue; returns whether it was queued."""
        removed = self._entries.pop(item_id, None) is not None
        if removed:
            self._maybe_compact()
        return removed

    def clear(self) -> None:
        self._heap.clear()
        self._entries.clear()
        self._delivered.clear()
        self._dead_letter.clear()
        self._over_soft_limit = False

    def entries(self) -> List[QueueEntry]:
        """Live entries in dequeue order."""
        live = [
            (self._heap_key(entry, seq), entry)
            for entry, seq in self._entries.values()
        ]
        return [entry for _, entry in sorted(live, key=lambda pair: pair[0])]

    # ── Capacity ─────────────────────────────────────────────────────

    @property
    def is_full(self) -> bool:
        return self.max_size is not None and len(self._entries) >= self.max_size

    @property
    def utilization(self) -> float:
        if self.max_size is None:
            return 0.0
        return len(self._entries) / self.max_size

    @property
    def backpressure_active(self) -> bool:
        return self.max_size is not None and self.utilization >= self.backpressure_threshold

    def status(self) -> QueueStatus:
        return QueueStatus(
            size=len(self._entries),
            max_size=self.max_size,
            utilization=self.utilization,
            backpressure_active=self.backpressure_active,
            dead_letter_size=len(self._dead_letter),
        )

    # ── Dead letter queue ────────────────────────────────────────────

    def dead_letter(self) -> List[DeadLetterEntry]:
        """Evicted entries, oldest first."""
        return list(self._dead_letter.values())

    def retry_dead_letter(self, item_id: str) -> bool:
        """Re-enqueue an evicted item with its last score.

        Returns ``False`` if the item is not in the dead letter queue.
        Raises ``QueueFullError`` like ``enqueue``; the entry then stays
        in the dead letter queue.
        """
        dead = self._dead_letter.get(item_id)
        if dead is None:
            return False
        self.enqueue(item_id, dead.entry.priority_score)
        logger.info("Re-queued %s from the dead letter queue", item_id)
        return True

    def clear_dead_letter(self, item_id: Optional[str] = None) -> int:
        """Drop one evicted entry, or all of them; returns how many."""
        if item_id is None:
            count = len(self._dead_letter)
            self._dead_letter.clear()
            return count
        return 1 if self._dead_letter.pop(item_id, None) is not None else 0

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[QueueEntry]:
        return iter(self.entries())

    # ── Internal helpers ─────────────────────────────────────────────

    def _heap_key(self, entry: QueueEntry, seq: int) -> Tuple[float, int, str]:
        order = seq if self.tie_break == TieBreak.FIFO else -seq
        return (-entry.priority_score, order, entry.item_id)

    def _push(self, entry: QueueEntry) -> None:
        seq = next(self._counter)
        self._entries[entry.item_id] = (entry, seq)
        heapq.heappush(self._heap, self._heap_key(entry, seq))
        self._maybe_compact()

    def _is_live(self, key: Tuple[float, int, str]) -> bool:
        current = self._entries.get(key[2])
        return current is not None and self._heap_key(*current) == key

    def _discard_stale(self) -> None:
        while self._heap and not self._is_live(self._heap[0]):
            heapq.heappop(self._heap)

    def _maybe_compact(self) -> None:
        if len(self._heap) < _COMPACT_MIN_HEAP or len(self._heap) <= 2 * len(self._entries):
            return
        self._heap = [self._heap_key(entry, seq) for entry, seq in self._entries.values()]
        heapq.heapify(self._heap)

    def _pop(self) -> Optional[QueueEntry]:
        self._discard_stale()
        if not self._heap:
            return None
        key = heapq.heappop(self._heap)
        entry, _ = self._entries.pop(key[2])
        return entry

    def _make_room(self, item_id: str, priority_score: float) -> None:
        size = len(self._entries)
        if self.policy == RejectionPolicy.REJECT:
            raise QueueFullError(item_id, size, self.max_size, reason="queue_full")

        if self.policy == RejectionPolicy.DROP_OLDEST:
            victim = min(self._entries.values(), key=lambda pair: (pair[0].queued_at, pair[1]))[0]
            self._evict(victim, "dropped_for_newer")
            return

        victim = min(
            self._entries.values(), key=lambda pair: (pair[0].priority_score, -pair[1])
        )[0]
        if priority_score <= victim.priority_score:
            raise QueueFullError(item_id, size, self.max_size, reason="lower_priority_than_queue")
        self._evict(victim, "dropped_for_higher_priority")

    def _evict(self, entry: QueueEntry, reason: str) -> None:
        self._entries.pop(entry.item_id, None)
        self._dead_letter.pop(entry.item_id, None)
        self._dead_letter[entry.item_id] = DeadLetterEntry(entry=entry, reason=reason)
        while len(self._dead_letter) > self.dead_letter_max_size:
            oldest = next(iter(self._dead_letter))
            del self._dead_letter[oldest]
            logger.warning("Dead letter queue full; discarded %s", oldest)
        logger.warning("Queue full; moved %s to the dead letter queue (%s)", entry.item_id, reason)

    def _check_soft_limit(self) -> None:
        over = self.max_size is not None and self.utilization >= self.soft_limit_ratio
        if over and not self._over_soft_limit:
            logger.warning(
                "Work queue at %d/%d (%.0f%% of capacity)",
                len(self._entries), self.max_size, self.utilization * 100,
            )
        self._over_soft_limit = over
