"""
Unified error system for the pipeline scheduling core.

Single hierarchy rooted at ``PipelineException`` with:
- Consistent error context and metadata (``ErrorContext``)
- Categories matching the scheduler's error taxonomy (validation,
  transient execution, state, structural)
- Backoff configuration shared by the retry layer (``RetryConfig``)
- Introspection helper for documentation (``get_exception_hierarchy``)

Propagation rules:
- Validation and state errors propagate to the top-level caller.
- Execution errors are retried by the orchestrator and end up as a
  ``failed`` stage, never as an exception out of ``execute_pipeline``.
- Structural errors (worker double-assignment) signal a broken caller
  contract; cycles are reported as data and never raised.
"""

import logging
import sys
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)


# ============================================================================
# Enums
# ============================================================================

class ErrorSeverity(Enum):
    """Error severity levels."""
    CRITICAL = "critical"      # Pipeline cannot continue
    ERROR = "error"            # Operation failed
    WARNING = "warning"        # Degraded operation, caller should be aware
    INFO = "info"              # Informational, no action needed


class ErrorCategory(Enum):
    """Error categories for classification and routing."""
    VALIDATION = "validation"          # Malformed graph, bad override, bad input
    CONFIGURATION = "configuration"    # Invalid settings
    EXECUTION = "execution"            # Stage invocation failure (transient)
    TIMEOUT = "timeout"                # Stage invocation timed out (transient)
    STATE = "state"                    # Persisted state unreadable or unwritable
    RESOURCE = "resource"              # Worker slot / work order contract
    INTERNAL = "internal"              # Anything else


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class ErrorContext:
    """Rich error context with metadata."""
    error_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL
    message: str = ""
    user_message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None
    is_recoverable: bool = True
    recovery_suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (stack trace excluded)."""
        return {
            "error_id": self.error_id,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "category": self.category.value,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details,
            "is_recoverable": self.is_recoverable,
            "recovery_suggestions": self.recovery_suggestions,
        }


@dataclass
class RetryConfig:
    """Exponential backoff configuration (delays in seconds)."""
    max_retries: int = 3
    initial_delay: float = 5.0
    max_delay: float = 60.0
    exponential_base: float = 2.0

    def get_delay(self, attempt: int) -> float:
        """Delay before retrying after *attempt* (0-indexed) failed."""
        return min(self.initial_delay * (self.exponential_base ** attempt), self.max_delay)


# ============================================================================
# Exception Hierarchy
# ============================================================================

class PipelineException(Exception):
    """Base exception for all pipeline core errors with rich context."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        details: Optional[Dict[str, Any]] = None,
        is_recoverable: bool = True,
        user_message: Optional[str] = None,
        recovery_suggestions: Optional[List[str]] = None,
        context: Optional[ErrorContext] = None,
    ):
        self.message = message
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.is_recoverable = is_recoverable
        self.user_message = user_message or message
        self.recovery_suggestions = recovery_suggestions or []

        if context:
            self.context = context
        else:
            trace = traceback.format_exc()
            self.context = ErrorContext(
                severity=severity,
                category=category,
                message=message,
                user_message=self.user_message,
                details=self.details,
                stack_trace=None if trace.startswith("NoneType: None") else trace,
                is_recoverable=is_recoverable,
                recovery_suggestions=self.recovery_suggestions,
            )

        super().__init__(self.message)

    def __str__(self) -> str:
        return f"{self.category.value}: {self.message}"

    @property
    def kind(self) -> str:
        """Structured error kind (the class name)."""
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        data = self.context.to_dict()
        data["kind"] = self.kind
        return data


# ============================================================================
# Validation Errors (reported immediately, never retried)
# ============================================================================

class ValidationError(PipelineException):
    """Validation error (input/graph/override validation failed)."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


class GraphValidationError(ValidationError):
    """Dependency graph structure is invalid.  Carries every problem found."""
    def __init__(self, errors: Sequence[str], **kwargs):
        self.errors = list(errors)
        summary = "; ".join(self.errors[:5])
        if len(self.errors) > 5:
            summary += f" (and {len(self.errors) - 5} more)"
        kwargs.setdefault("details", {"errors": self.errors})
        super().__init__(f"Invalid dependency graph: {summary}", **kwargs)


class GraphNotFoundError(ValidationError):
    """Dependency graph file does not exist."""
    def __init__(self, path: str, **kwargs):
        self.path = path
        kwargs.setdefault("details", {"path": path})
        super().__init__(f"Dependency graph file not found: {path}", **kwargs)


class GraphParseError(ValidationError):
    """Dependency graph file exists but is not valid JSON."""
    def __init__(self, path: str, reason: str = "", **kwargs):
        self.path = path
        kwargs.setdefault("details", {"path": path, "reason": reason})
        message = f"Failed to parse dependency graph: {path}"
        if reason:
            message += f" ({reason})"
        super().__init__(message, **kwargs)


class WorkItemNotFoundError(ValidationError):
    """Referenced work item is not part of the analyzed graph."""
    def __init__(self, item_id: str, operation: str = "", **kwargs):
        self.item_id = item_id
        kwargs.setdefault("details", {"item_id": item_id, "operation": operation})
        suffix = f" (in {operation})" if operation else ""
        super().__init__(f"Work item not found: {item_id}{suffix}", **kwargs)


class InvalidStageError(ValidationError):
    """Stage override names a stage that does not exist in the mode's catalog."""
    def __init__(self, stage: str, mode: str, **kwargs):
        self.stage = stage
        self.mode = mode
        kwargs.setdefault("details", {"stage": stage, "mode": mode})
        super().__init__(f"Unknown stage {stage!r} for {mode} pipeline", **kwargs)


class InvalidProjectDirError(ValidationError):
    """Project directory is missing or not a directory."""
    def __init__(self, path: str, reason: str, **kwargs):
        self.path = path
        kwargs.setdefault("details", {"path": path, "reason": reason})
        super().__init__(f"Invalid project directory {path}: {reason}", **kwargs)


class ConfigurationError(ValidationError):
    """Configuration value is invalid."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CONFIGURATION)
        super().__init__(message, **kwargs)


# ============================================================================
# Transient Execution Errors (retried, then converted to a failed stage)
# ============================================================================

class StageExecutionError(PipelineException):
    """Stage invocation failed."""
    def __init__(self, stage: str, message: str, **kwargs):
        self.stage = stage
        kwargs.setdefault("category", ErrorCategory.EXECUTION)
        kwargs.setdefault("details", {"stage": stage})
        super().__init__(message, **kwargs)


class StageTimeoutError(StageExecutionError):
    """Stage invocation exceeded its timeout."""
    def __init__(self, stage: str, timeout: float, **kwargs):
        self.timeout = timeout
        kwargs.setdefault("category", ErrorCategory.TIMEOUT)
        kwargs.setdefault("details", {"stage": stage, "timeout": timeout})
        super().__init__(stage, f"Stage {stage!r} timed out after {timeout:g}s", **kwargs)


# ============================================================================
# State Errors
# ============================================================================

class StateError(PipelineException):
    """Base error for persisted state."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.STATE)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


class StatePersistenceError(StateError):
    """Writing or reading the state store failed at the I/O level."""
    def __init__(self, operation: str, target: str, reason: str = "", **kwargs):
        self.operation = operation
        self.target = target
        kwargs.setdefault("details", {"operation": operation, "target": target, "reason": reason})
        message = f"State {operation} failed for {target}"
        if reason:
            message += f": {reason}"
        super().__init__(message, **kwargs)


class StateCorruptedError(StateError):
    """A record exists but cannot be decoded."""
    def __init__(self, key: str, reason: str, **kwargs):
        self.key = key
        self.reason = reason
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        kwargs.setdefault("details", {"key": key, "reason": reason})
        kwargs.setdefault("recovery_suggestions", [
            "Inspect or delete the corrupted record",
            "Start a new session instead of resuming",
        ])
        super().__init__(f"State record {key!r} is corrupted: {reason}", **kwargs)


class SessionCorruptedError(StateCorruptedError):
    """Persisted session exists but is unreadable or structurally invalid."""
    def __init__(self, session_id: str, reason: str, **kwargs):
        self.session_id = session_id
        super().__init__(session_id, reason, **kwargs)


class SessionNotFoundError(StateError):
    """No persisted session with this id exists."""
    def __init__(self, session_id: str, **kwargs):
        self.session_id = session_id
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("details", {"session_id": session_id})
        super().__init__(f"Session not found: {session_id}", **kwargs)


# ============================================================================
# Structural / Contract Errors
# ============================================================================

class WorkerPoolError(PipelineException):
    """Base worker pool error."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.RESOURCE)
        super().__init__(message, **kwargs)


class WorkerNotFoundError(WorkerPoolError):
    """Worker id is not part of the pool."""
    def __init__(self, worker_id: str, **kwargs):
        self.worker_id = worker_id
        kwargs.setdefault("details", {"worker_id": worker_id})
        super().__init__(f"Worker not found: {worker_id}", **kwargs)


class WorkerNotAvailableError(WorkerPoolError):
    """Worker already holds an order or is in error state."""
    def __init__(self, worker_id: str, status: str, **kwargs):
        self.worker_id = worker_id
        self.status = status
        kwargs.setdefault("is_recoverable", False)
        kwargs.setdefault("details", {"worker_id": worker_id, "status": status})
        super().__init__(f"Worker {worker_id} is not available (status: {status})", **kwargs)


class WorkOrderNotFoundError(WorkerPoolError):
    """Work order id is unknown to the pool."""
    def __init__(self, order_id: str, **kwargs):
        self.order_id = order_id
        kwargs.setdefault("details", {"order_id": order_id})
        super().__init__(f"Work order not found: {order_id}", **kwargs)


class WorkOrderCreationError(WorkerPoolError):
    """Work order record could not be persisted."""
    def __init__(self, item_id: str, reason: str = "", **kwargs):
        self.item_id = item_id
        kwargs.setdefault("category", ErrorCategory.STATE)
        kwargs.setdefault("details", {"item_id": item_id, "reason": reason})
        message = f"Failed to create work order for {item_id}"
        if reason:
            message += f": {reason}"
        super().__init__(message, **kwargs)


class QueueFullError(WorkerPoolError):
    """Bounded work queue refused an item."""
    def __init__(self, item_id: str, size: int, max_size: Optional[int], reason: str = "queue_full", **kwargs):
        self.item_id = item_id
        self.size = size
        self.max_size = max_size
        self.reason = reason
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("details", {
            "item_id": item_id, "size": size, "max_size": max_size, "reason": reason,
        })
        super().__init__(f"Work queue full ({size}/{max_size}); rejected {item_id}: {reason}", **kwargs)


class OrchestratorError(PipelineException):
    """Base orchestrator error."""
    pass


class PipelineInProgressError(OrchestratorError):
    """A session is already running on this orchestrator."""
    def __init__(self, session_id: str, **kwargs):
        self.session_id = session_id
        kwargs.setdefault("details", {"session_id": session_id})
        super().__init__(f"Pipeline session {session_id} is already running", **kwargs)


class PipelineFailedError(OrchestratorError):
    """Pipeline finished with overall status ``failed``."""
    def __init__(self, session_id: str, mode: str, failed_stages: Sequence[str], **kwargs):
        self.session_id = session_id
        self.mode = mode
        self.failed_stages = list(failed_stages)
        kwargs.setdefault("category", ErrorCategory.EXECUTION)
        kwargs.setdefault("is_recoverable", False)
        kwargs.setdefault("details", {
            "session_id": session_id,
            "mode": mode,
            "failed_stages": self.failed_stages,
        })
        names = ", ".join(self.failed_stages) or "none"
        super().__init__(f"{mode} pipeline {session_id} failed (failed stages: {names})", **kwargs)


# ============================================================================
# Utility Functions
# ============================================================================

def describe_error(error: BaseException) -> str:
    """Human-readable one-liner for any exception, used in stage results."""
    if isinstance(error, PipelineException):
        return error.message
    text = str(error)
    return text if text else type(error).__name__


def get_exception_hierarchy() -> Dict[str, List[str]]:
    """Get exception hierarchy for documentation/introspection."""
    module = sys.modules[__name__]

    hierarchy: Dict[str, List[str]] = {}
    for name, obj in module.__dict__.items():
        if isinstance(obj, type) and issubclass(obj, PipelineException):
            bases = [b.__name__ for b in obj.__bases__ if issubclass(b, PipelineException)]
            for base in bases:
                hierarchy.setdefault(base, []).append(name)

    return hierarchy


__all__ = [
    # Enums
    "ErrorSeverity",
    "ErrorCategory",
    # Data classes
    "ErrorContext",
    "RetryConfig",
    # Base exception
    "PipelineException",
    # Validation errors
    "ValidationError",
    "GraphValidationError",
    "GraphNotFoundError",
    "GraphParseError",
    "WorkItemNotFoundError",
    "InvalidStageError",
    "InvalidProjectDirError",
    "ConfigurationError",
    # Execution errors
    "StageExecutionError",
    "StageTimeoutError",
    # State errors
    "StateError",
    "StatePersistenceError",
    "StateCorruptedError",
    "SessionCorruptedError",
    "SessionNotFoundError",
    # Structural errors
    "WorkerPoolError",
    "WorkerNotFoundError",
    "WorkerNotAvailableError",
    "WorkOrderNotFoundError",
    "WorkOrderCreationError",
    "QueueFullError",
    "OrchestratorError",
    "PipelineInProgressError",
    "PipelineFailedError",
    # Utilities
    "describe_error",
    "get_exception_hierarchy",
]
