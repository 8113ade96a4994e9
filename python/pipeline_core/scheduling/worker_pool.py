"""Worker pool manager.

Owns a fixed set of single-occupancy execution slots (``worker-1`` ..
``worker-N``), turns ready work items into durable, sequentially numbered
work orders, and persists its own snapshot for crash recovery.

Every public method is synchronous and completes without awaiting, so on
a single asyncio event loop each pool mutation is atomic.  Long-running
work happens outside the pool; callers report back through
``complete_work`` / ``fail_work``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from pipeline_core.exceptions_unified import (
    StateCorruptedError,
    StatePersistenceError,
    WorkerNotAvailableError,
    WorkerNotFoundError,
    WorkOrderCreationError,
    WorkOrderNotFoundError,
    describe_error,
)
from pipeline_core.interfaces.state_store import IStateStore
from pipeline_core.persistence.state_store import InMemoryStateStore, JsonFileStateStore
from pipeline_core.scheduling.dependency_analyzer import AnalyzedItem, Priority, WorkItem
from pipeline_core.scheduling.work_queue import (
    DeadLetterEntry,
    QueueEntry,
    QueueStatus,
    RejectionPolicy,
    TieBreak,
    WorkQueue,
)
logger = logging.getLogger(__name__)

WORK_ORDERS_NAMESPACE = "work_orders"
CONTROLLER_STATE_NAMESPACE = "controller_state"

# Queue priority for orders created from a bare work item (higher = sooner)
PRIORITY_VALUES: Dict[Priority, float] = {
    Priority.P0: 100.0,
    Priority.P1: 75.0,
    Priority.P2: 50.0,
    Priority.P3: 25.0,
}

_ORDER_ID = re.compile(r"^WO-(\d+)$")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def queue_priority(item: Union[WorkItem, AnalyzedItem]) -> float:
    """Queue priority for *item*: higher dequeues first.

    Analyzer scores are lower-is-more-urgent, so they are negated.
    """
    if isinstance(item, AnalyzedItem):
        return -item.priority_score
    return PRIORITY_VALUES[item.priority]


# ── Value objects ────────────────────────────────────────────────────


class WorkerStatus(str, Enum):
    IDLE = "idle"
    WORKING = "working"
    ERROR = "error"  # must be reset before reuse


@dataclass
class Worker:
    """One execution slot."""

    id: str
    status: WorkerStatus = WorkerStatus.IDLE
    current_item: Optional[str] = None
    current_order: Optional[str] = None
    started_at: Optional[str] = None
    completed_tasks: int = 0
    last_error: Optional[str] = None

    def clear_assignment(self) -> None:
        self.current_item = None
        self.current_order = None
        self.started_at = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "current_item": self.current_item,
            "current_order": self.current_order,
            "started_at": self.started_at,
            "completed_tasks": self.completed_tasks,
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class WorkOrder:
    """Durable record of one attempt to execute a work item."""

    order_id: str
    item_id: str
    created_at: str
    priority: float
    dependencies: Tuple[str, ...] = ()
    context: Dict[str, Any] = field(default_factory=dict)
    item_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "order_id": self.order_id,
            "item_id": self.item_id,
            "created_at": self.created_at,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
            "context": dict(self.context),
        }
        if self.item_url is not None:
            data["item_url"] = self.item_url
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkOrder":
        return cls(
            order_id=data["order_id"],
            item_id=data["item_id"],
            created_at=data["created_at"],
            priority=data.get("priority", 0.0),
            dependencies=tuple(data.get("dependencies", ())),
            context=dict(data.get("context", {})),
            item_url=data.get("item_url"),
        )


@dataclass(frozen=True)
class WorkOrderResult:
    """Outcome of one work order, reported once by the executor."""

    order_id: str
    success: bool
    completed_at: str = field(default_factory=_now)
    changes: Tuple[str, ...] = ()
    output: str = ""
    error: Optional[str] = None


@dataclass(frozen=True)
class PoolStatus:
    total_workers: int
    idle_workers: int
    working_workers: int
    error_workers: int
    workers: Tuple[Dict[str, Any], ...]
    active_orders: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_workers": self.total_workers,
            "idle_workers": self.idle_workers,
            "working_workers": self.working_workers,
            "error_workers": self.error_workers,
            "workers": [dict(w) for w in self.workers],
            "active_orders": list(self.active_orders),
        }


CompletionCallback = Callable[[str, WorkOrderResult], Any]
FailureCallback = Callable[[str, str, str], Any]


# ── Pool manager ─────────────────────────────────────────────────────


class WorkerPoolManager:
    """Bounded pool of workers plus the queue of items waiting for one."""

    def __init__(
        self,
        max_workers: int = 5,
        store: Optional[IStateStore] = None,
        tie_break: TieBreak = TieBreak.FIFO,
        max_queue_size: Optional[int] = None,
        rejection_policy: RejectionPolicy = RejectionPolicy.REJECT,
        dead_letter_max_size: int = 100,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.max_workers = max_workers
        self.store: IStateStore = store if store is not None else InMemoryStateStore()
        self.queue = WorkQueue(
            tie_break,
            max_size=max_queue_size,
            policy=rejection_policy,
            dead_letter_max_size=dead_letter_max_size,
        )
        self._workers: Dict[str, Worker] = {
            f"worker-{i}": Worker(id=f"worker-{i}") for i in range(1, max_workers + 1)
        }
        self._orders: Dict[str, WorkOrder] = {}
        self._completed_orders: List[str] = []
        self._failed_orders: List[str] = []
        self._order_counter = 0
        self._completion_callbacks: List[CompletionCallback] = []
        self._failure_callbacks: List[FailureCallback] = []

    @classmethod
    def from_settings(
        cls, settings: Any, project_dir: Union[str, Path] = ".", **overrides: Any
    ) -> "WorkerPoolManager":
        """Pool sized by *settings*, persisting under ``<project_dir>/<work_orders_dir>``."""
        values: Dict[str, Any] = {
            "max_workers": settings.max_workers,
            "store": JsonFileStateStore(Path(project_dir) / settings.work_orders_dir),
            "max_queue_size": settings.queue_max_size,
            "rejection_policy": RejectionPolicy(settings.queue_rejection_policy),
            "dead_letter_max_size": settings.dead_letter_max_size,
        }
        values.update(overrides)
        return cls(**values)

    # ── Slots ────────────────────────────────────────────────────────

    def get_available_slot(self) -> Optional[str]:
        """Return the first idle worker id, or ``None``.  Never blocks."""
        for worker in self._workers.values():
            if worker.status == WorkerStatus.IDLE:
                return worker.id
        return None

    def get_worker(self, worker_id: str) -> Worker:
        worker = self._workers.get(worker_id)
        if worker is None:
            raise WorkerNotFoundError(worker_id)
        return worker

    @property
    def workers(self) -> List[Worker]:
        return list(self._workers.values())

    # ── Work orders ──────────────────────────────────────────────────

    def create_work_order(
        self,
        item: Union[WorkItem, AnalyzedItem],
        context: Optional[Dict[str, Any]] = None,
    ) -> WorkOrder:
        """Allocate the next ``WO-NNN`` id and persist the order record.

        Raises:
            WorkOrderCreationError: the record could not be written.  The
                id stays consumed.
        """
        work_item = item.item if isinstance(item, AnalyzedItem) else item
        dependencies = item.dependencies if isinstance(item, AnalyzedItem) else ()

        self._order_counter += 1
        order = WorkOrder(
            order_id=f"WO-{self._order_counter:03d}",
            item_id=work_item.id,
            created_at=_now(),
            priority=queue_priority(item),
            dependencies=tuple(dependencies),
            context=dict(context or {}),
            item_url=work_item.url,
        )
        try:
            self.store.save(WORK_ORDERS_NAMESPACE, order.order_id, order.to_dict())
        except StatePersistenceError as exc:
            raise WorkOrderCreationError(work_item.id, exc.message) from exc

        self._orders[order.order_id] = order
        logger.debug("Created work order %s for %s", order.order_id, order.item_id)
        return order

    def get_work_order(self, order_id: str) -> WorkOrder:
        order = self._orders.get(order_id)
        if order is None:
            raise WorkOrderNotFoundError(order_id)
        return order

    def assign_work(self, worker_id: str, order: WorkOrder) -> None:
        """Bind *order* to an idle worker.

        Raises:
            WorkerNotFoundError: unknown worker id.
            WorkerNotAvailableError: the worker is working or in error state.
        """
        worker = self.get_worker(worker_id)
        if worker.status != WorkerStatus.IDLE:
            raise WorkerNotAvailableError(worker_id, worker.status.value)

        self._orders.setdefault(order.order_id, order)
        worker.status = WorkerStatus.WORKING
        worker.current_item = order.item_id
        worker.current_order = order.order_id
        worker.started_at = _now()
        self.queue.remove(order.item_id)
        logger.debug("Assigned %s (%s) to %s", order.order_id, order.item_id, worker_id)

    def complete_work(self, worker_id: str, result: WorkOrderResult) -> None:
        """Record the outcome of the worker's order.

        A failed result is handled exactly like ``fail_work``.

        Raises:
            WorkerNotAvailableError: the worker is not working on
                ``result.order_id``.
        """
        worker = self.get_worker(worker_id)
        if worker.status != WorkerStatus.WORKING or worker.current_order != result.order_id:
            raise WorkerNotAvailableError(worker_id, worker.status.value)
        if not result.success:
            self.fail_work(worker_id, result.order_id, result.error or "Work order failed")
            return

        worker.status = WorkerStatus.IDLE
        worker.clear_assignment()
        worker.completed_tasks += 1
        if result.order_id not in self._completed_orders:
            self._completed_orders.append(result.order_id)
        logger.debug("%s completed %s", worker_id, result.order_id)

        for callback in self._completion_callbacks:
            self._run_callback(callback, worker_id, result)

    def fail_work(self, worker_id: str, order_id: str, error: Union[str, BaseException]) -> None:
        """Mark the worker ``error`` and record the order as failed.

        The worker stays unusable until ``reset_worker`` is called.
        """
        worker = self.get_worker(worker_id)
        message = error if isinstance(error, str) else describe_error(error)
        worker.status = WorkerStatus.ERROR
        worker.last_error = message
        worker.clear_assignment()
        if order_id not in self._failed_orders:
            self._failed_orders.append(order_id)
        logger.warning("%s failed %s: %s", worker_id, order_id, message)

        for callback in self._failure_callbacks:
            self._run_callback(callback, worker_id, order_id, message)

    def release_worker(self, worker_id: str) -> None:
        """Return a worker to idle without recording an outcome.

        Raises:
            WorkerNotAvailableError: the worker is in error state and must
                go through ``reset_worker``.
        """
        worker = self.get_worker(worker_id)
        if worker.status == WorkerStatus.ERROR:
            raise WorkerNotAvailableError(worker_id, worker.status.value)
        worker.status = WorkerStatus.IDLE
        worker.clear_assignment()

    def reset_worker(self, worker_id: str) -> None:
        """Clear error state; the only way to reuse a failed worker."""
        worker = self.get_worker(worker_id)
        if worker.status == WorkerStatus.WORKING:
            logger.warning("Resetting %s while it holds %s", worker_id, worker.current_order)
        worker.status = WorkerStatus.IDLE
        worker.clear_assignment()
        worker.last_error = None

    def mark_worker_unresponsive(self, worker_id: str) -> Optional[str]:
        """Put a stuck worker into error state.

        Returns the item it was holding so the caller can ``reassign_item``.
        """
        worker = self.get_worker(worker_id)
        item_id = worker.current_item
        worker.status = WorkerStatus.ERROR
        worker.last_error = "Worker became unresponsive"
        worker.clear_assignment()
        logger.warning("%s marked unresponsive (held %s)", worker_id, item_id)
        return item_id

    def reassign_item(self, item_id: str) -> Optional[str]:
        """Move *item_id*'s latest order to an idle worker.

        Returns the new worker id, or ``None`` if the item has no order or
        no worker is free (in which case it is re-queued).
        Re-queueing follows the queue's rejection policy.
        """
        order = self._latest_order_for(item_id)
        if order is None:
            return None
        worker_id = self.get_available_slot()
        if worker_id is None:
            self.queue.enqueue(item_id, order.priority)
            return None
        self.assign_work(worker_id, order)
        return worker_id

    # ── Queue ────────────────────────────────────────────────────────

    def enqueue(self, item_id: str, priority_score: float) -> QueueEntry:
        """Queue *item_id*; raises ``QueueFullError`` when the queue refuses it."""
        return self.queue.enqueue(item_id, priority_score)

    def dequeue(self) -> Optional[str]:
        return self.queue.dequeue()

    def is_queued(self, item_id: str) -> bool:
        return item_id in self.queue

    def get_queue(self) -> List[QueueEntry]:
        return self.queue.entries()

    def get_queue_status(self) -> QueueStatus:
        return self.queue.status()

    def get_dead_letter(self) -> List[DeadLetterEntry]:
        return self.queue.dead_letter()

    def retry_dead_letter(self, item_id: str) -> bool:
        return self.queue.retry_dead_letter(item_id)

    def is_in_progress(self, item_id: str) -> bool:
        """Whether a live order on some worker wraps *item_id*."""
        return any(w.current_item == item_id for w in self._workers.values())

    # ── Callbacks ────────────────────────────────────────────────────

    def on_completion(self, callback: CompletionCallback) -> None:
        self._completion_callbacks.append(callback)

    def on_failure(self, callback: FailureCallback) -> None:
        self._failure_callbacks.append(callback)

    @staticmethod
    def _run_callback(callback: Callable[..., Any], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            logger.error("Worker pool callback %r raised", callback, exc_info=True)

    # ── Status ───────────────────────────────────────────────────────

    @property
    def completed_orders(self) -> List[str]:
        return list(self._completed_orders)

    @property
    def failed_orders(self) -> List[str]:
        return list(self._failed_orders)

    def get_status(self) -> PoolStatus:
        workers = list(self._workers.values())
        return PoolStatus(
            total_workers=self.max_workers,
            idle_workers=sum(1 for w in workers if w.status == WorkerStatus.IDLE),
            working_workers=sum(1 for w in workers if w.status == WorkerStatus.WORKING),
            error_workers=sum(1 for w in workers if w.status == WorkerStatus.ERROR),
            workers=tuple(w.to_dict() for w in workers),
            active_orders=tuple(
                w.current_order for w in workers
                if w.status == WorkerStatus.WORKING and w.current_order
            ),
        )

    def reset(self) -> None:
        """Drop queue, orders and outcomes; every worker back to idle.

        The order counter is kept so ids are never reused.
        """
        self.queue.clear()
        self._orders.clear()
        self._completed_orders.clear()
        self._failed_orders.clear()
        for worker in self._workers.values():
            worker.status = WorkerStatus.IDLE
            worker.clear_assignment()
            worker.completed_tasks = 0
            worker.last_error = None

    # ── Persistence ──────────────────────────────────────────────────

    def save_state(self, session_key: str) -> Dict[str, Any]:
        """Persist the full pool snapshot under *session_key*."""
        live_orders = {w.current_order for w in self._workers.values() if w.current_order}
        state = {
            "project_id": session_key,
            "last_updated": _now(),
            "worker_pool": self.get_status().to_dict(),
            "work_queue": [e.to_dict() for e in self.queue.entries()],
            "dead_letter": [d.to_dict() for d in self.queue.dead_letter()],
            "completed_orders": list(self._completed_orders),
            "failed_orders": list(self._failed_orders),
            "work_order_counter": self._order_counter,
            "active_work_orders": [
                self._orders[o].to_dict() for o in sorted(live_orders) if o in self._orders
            ],
        }
        self.store.save(CONTROLLER_STATE_NAMESPACE, session_key, state)
        logger.debug("Saved worker pool state for %s", session_key)
        return state

    def load_state(self, session_key: str) -> Optional[Dict[str, Any]]:
        """Restore a snapshot written by ``save_state``.

        Returns the raw snapshot, or ``None`` if none exists for this key.

        Raises:
            StateCorruptedError: the snapshot exists but cannot be restored
                or was written for another key.
        """
        state = self.store.load(CONTROLLER_STATE_NAMESPACE, session_key)
        if state is None:
            return None
        if state.get("project_id") != session_key:
            raise StateCorruptedError(
                f"{CONTROLLER_STATE_NAMESPACE}/{session_key}",
                f"snapshot belongs to {state.get('project_id')!r}",
            )
        try:
            self._restore(state)
        except (KeyError, TypeError, ValueError) as exc:
            raise StateCorruptedError(
                f"{CONTROLLER_STATE_NAMESPACE}/{session_key}", f"invalid snapshot: {exc!r}"
            ) from exc
        logger.info("Restored worker pool state for %s", session_key)
        return state

    def _restore(self, state: Dict[str, Any]) -> None:
        orders = [WorkOrder.from_dict(o) for o in state.get("active_work_orders", [])]
        entries = [QueueEntry.from_dict(e) for e in state["work_queue"]]
        dead_letter = [DeadLetterEntry.from_dict(d) for d in state.get("dead_letter", [])]
        workers = state["worker_pool"]["workers"]

        self.reset()
        for info in workers:
            worker = self._workers.get(info["id"])
            if worker is None:
                logger.warning("Snapshot worker %s exceeds pool size; dropped", info["id"])
                continue
            worker.status = WorkerStatus(info["status"])
            worker.current_item = info.get("current_item")
            worker.current_order = info.get("current_order")
            worker.started_at = info.get("started_at")
            worker.completed_tasks = int(info.get("completed_tasks", 0))
            worker.last_error = info.get("last_error")

        self.queue.restore(entries, dead_letter)
        self._orders.update({o.order_id: o for o in orders})
        self._completed_orders.extend(state["completed_orders"])
        self._failed_orders.extend(state["failed_orders"])

        seen = [int(state.get("work_order_counter", 0)), self._order_counter]
        for order_id in [*self._completed_orders, *self._failed_orders, *self._orders]:
            match = _ORDER_ID.match(order_id)
            if match:
                seen.append(int(match.group(1)))
        self._order_counter = max(seen)

    def _latest_order_for(self, item_id: str) -> Optional[WorkOrder]:
        latest = None
        for order in self._orders.values():
            if order.item_id == item_id:
                latest = order
        return latest
