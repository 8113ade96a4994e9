"""Work-item scheduling: dependency analysis, queueing and the worker pool.

Dependency analysis with cycle reporting, a bounded priority work queue
with dead-lettering, a worker pool with durable work orders, and retry
with exponential backoff.
"""

from pipeline_core.scheduling.dependency_analyzer import (
    AnalysisResult,
    AnalyzedItem,
    AnalyzerConfig,
    CriticalPath,
    CycleInfo,
    DependencyAnalyzer,
    DependencyEdge,
    DependencyGraph,
    GraphStatistics,
    ParallelGroup,
    Priority,
    WorkItem,
    WorkItemStatus,
)
from pipeline_core.scheduling.retry_strategies import (
    RetryDecision,
    RetryReason,
    RetryStrategy,
)
from pipeline_core.scheduling.work_dispatcher import DispatchReport, WorkDispatcher
from pipeline_core.scheduling.work_queue import (
    DeadLetterEntry,
    QueueEntry,
    QueueStatus,
    RejectionPolicy,
    TieBreak,
    WorkQueue,
)
from pipeline_core.scheduling.worker_pool import (
    PoolStatus,
    Worker,
    WorkerPoolManager,
    WorkerStatus,
    WorkOrder,
    WorkOrderResult,
)

__all__ = [
    # Dependency analyzer
    "AnalysisResult",
    "AnalyzedItem",
    "AnalyzerConfig",
    "CriticalPath",
    "CycleInfo",
    "DependencyAnalyzer",
    "DependencyEdge",
    "DependencyGraph",
    "GraphStatistics",
    "ParallelGroup",
    "Priority",
    "WorkItem",
    "WorkItemStatus",
    # Retry
    "RetryDecision",
    "RetryReason",
    "RetryStrategy",
    # Queue / pool
    "DeadLetterEntry",
    "DispatchReport",
    "PoolStatus",
    "QueueEntry",
    "QueueStatus",
    "RejectionPolicy",
    "TieBreak",
    "WorkDispatcher",
    "Worker",
    "WorkerPoolManager",
    "WorkerStatus",
    "WorkOrder",
    "WorkOrderResult",
    "WorkQueue",
]
