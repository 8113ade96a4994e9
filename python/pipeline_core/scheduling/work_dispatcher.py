"""Drives a ``WorkerPoolManager`` from an ``AnalysisResult``.

The dispatcher is the single coordinating coroutine: it queues items as
their dependencies complete, fills idle slots, and records outcomes.
Executions and backoff timers run as tasks; every pool mutation happens
here between awaits, so the pool itself needs no locking.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple, Union

from pipeline_core.exceptions_unified import QueueFullError, describe_error
from pipeline_core.scheduling.dependency_analyzer import AnalysisResult, WorkItemStatus
from pipeline_core.scheduling.retry_strategies import (
    RetryReason,
    RetryStrategy,
    is_retryable,
    reason_for,
)
from pipeline_core.scheduling.worker_pool import (
    WorkerPoolManager,
    WorkOrder,
    WorkOrderResult,
    queue_priority,
)

logger = logging.getLogger(__name__)

ExecuteFn = Callable[[WorkOrder], Awaitable[WorkOrderResult]]


@dataclass
class DispatchReport:
    """Outcome of one ``WorkDispatcher.run``."""

    completed: List[str] = field(default_factory=list)  # item ids, completion order
    failed: List[str] = field(default_factory=list)
    blocked: List[str] = field(default_factory=list)  # cycle members and dependents of failures
    dead_lettered: List[str] = field(default_factory=list)  # evicted from a full queue
    orders: List[str] = field(default_factory=list)  # order ids, creation order
    attempts: Dict[str, int] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.failed and not self.blocked and not self.dead_lettered and not self.cancelled

    def to_dict(self) -> Dict[str, Any]:
        return {
            "completed": list(self.completed),
            "failed": list(self.failed),
            "blocked": list(self.blocked),
            "dead_lettered": list(self.dead_lettered),
            "orders": list(self.orders),
            "attempts": dict(self.attempts),
            "errors": dict(self.errors),
            "cancelled": self.cancelled,
        }


class WorkDispatcher:
    """Runs analyzed work items through the pool with bounded concurrency.

    Args:
        pool: Slots, queue and order bookkeeping.
        retry_strategy: Per-item retry policy (a failed item gets a new
            work order per attempt).
        sleep: Backoff sleep; inject a no-op coroutine in tests.
        session_key: When set, the pool snapshot is saved after every
            completed or failed order.
    """

    def __init__(
        self,
        pool: WorkerPoolManager,
        retry_strategy: Optional[RetryStrategy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        session_key: Optional[str] = None,
    ) -> None:
        self.pool = pool
        self.retry_strategy = retry_strategy or RetryStrategy()
        self._sleep = sleep
        self.session_key = session_key
        self._cancelled = False

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        project_dir: Union[str, Path] = ".",
        session_key: Optional[str] = None,
        **overrides: Any,
    ) -> "WorkDispatcher":
        """Dispatcher over a settings-sized pool persisted under *project_dir*."""
        return cls(
            WorkerPoolManager.from_settings(settings, project_dir),
            retry_strategy=RetryStrategy.from_settings(settings),
            session_key=session_key,
            **overrides,
        )

    def cancel(self) -> None:
        """Stop creating orders; in-flight orders still finish."""
        self._cancelled = True

    async def run(self, analysis: AnalysisResult, execute: ExecuteFn) -> DispatchReport:
        report = DispatchReport()
        items = analysis.items
        done: Set[str] = {i for i, a in items.items() if a.item.status == WorkItemStatus.COMPLETED}
        blocked: Set[str] = set(analysis.blocked_by_cycle)
        finished: Set[str] = set(done) | blocked

        executions: Dict[asyncio.Task, Tuple[str, WorkOrder]] = {}
        backoffs: Dict[asyncio.Task, str] = {}
        # ready items a full queue refused; offered again as it drains
        overflow: Deque[str] = deque()

        def offer(item_id: str) -> None:
            try:
                self.pool.enqueue(item_id, queue_priority(items[item_id]))
            except QueueFullError as exc:
                logger.debug("%s held back: %s", item_id, exc.reason)
                overflow.append(item_id)

        def queue_if_ready(item_id: str) -> None:
            if item_id in finished or item_id in overflow:
                return
            if self.pool.is_queued(item_id) or self.pool.is_in_progress(item_id):
                return
            if all(dep in done for dep in items[item_id].dependencies):
                offer(item_id)

        for item_id in analysis.execution_order:
            queue_if_ready(item_id)

        while True:
            while not self._cancelled:
                while overflow and not self.pool.queue.is_full:
                    offer(overflow.popleft())
                worker_id = self.pool.get_available_slot()
                if worker_id is None:
                    break
                item_id = self.pool.dequeue()
                if item_id is None:
                    break
                attempt = report.attempts.get(item_id, 0) + 1
                report.attempts[item_id] = attempt
                order = self.pool.create_work_order(items[item_id], context={"attempt": attempt})
                report.orders.append(order.order_id)
                self.pool.assign_work(worker_id, order)
                executions[asyncio.ensure_future(execute(order))] = (worker_id, order)

            if not executions and not backoffs:
                break

            finished_tasks, _ = await asyncio.wait(
                [*executions, *backoffs], return_when=asyncio.FIRST_COMPLETED
            )
            for task in finished_tasks:
                if task in backoffs:
                    item_id = backoffs.pop(task)
                    task.result()
                    if not self._cancelled:
                        offer(item_id)
                    continue

                worker_id, order = executions.pop(task)
                result, error = self._collect(task, order)
                self.pool.complete_work(worker_id, result)

                if result.success:
                    done.add(order.item_id)
                    finished.add(order.item_id)
                    report.completed.append(order.item_id)
                    for dependent in items[order.item_id].dependents:
                        queue_if_ready(dependent)
                else:
                    self.pool.reset_worker(worker_id)
                    report.errors[order.item_id] = result.error or "Work order failed"
                    delay = self._retry_delay(order.item_id, report.attempts[order.item_id], error)
                    if delay is None:
                        finished.add(order.item_id)
                        report.failed.append(order.item_id)
                    else:
                        backoffs[asyncio.ensure_future(self._sleep(delay))] = order.item_id

                if self.session_key:
                    self.pool.save_state(self.session_key)

        report.cancelled = self._cancelled
        report.dead_lettered = [
            d.item_id for d in self.pool.get_dead_letter() if d.item_id not in finished
        ]
        unreached = [
            i for i in analysis.execution_order
            if i not in finished and i not in report.dead_lettered
        ]
        report.blocked = sorted(blocked) + unreached
        if report.failed or report.blocked or report.dead_lettered:
            logger.warning(
                "Dispatch finished with %d failed, %d blocked and %d dead-lettered item(s)",
                len(report.failed), len(report.blocked), len(report.dead_lettered),
            )
        else:
            logger.info("Dispatch finished: %d item(s) completed", len(report.completed))
        return report

    @staticmethod
    def _collect(
        task: asyncio.Task, order: WorkOrder
    ) -> Tuple[WorkOrderResult, Optional[BaseException]]:
        """Result of an execution task; an exception becomes a failed result."""
        try:
            return task.result(), None
        except Exception as exc:
            return WorkOrderResult(order_id=order.order_id, success=False, error=describe_error(exc)), exc

    def _retry_delay(
        self, item_id: str, attempt: int, error: Optional[BaseException]
    ) -> Optional[float]:
        if error is not None and not is_retryable(error):
            logger.warning("%s failed with a non-retryable error: %s", item_id, describe_error(error))
            return None
        reason = reason_for(error) if error is not None else RetryReason.EXECUTION_FAILURE
        decision = self.retry_strategy.decide(attempt, reason, cancelled=self._cancelled)
        if not decision.should_retry:
            logger.warning("%s gave up after %d attempt(s): %s", item_id, attempt, decision.message)
            return None
        logger.warning("%s attempt %d failed; %s", item_id, attempt, decision.message)
        return decision.delay
