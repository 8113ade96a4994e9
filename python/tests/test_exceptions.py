"""Tests for pipeline_core.exceptions_unified."""

import pytest

from pipeline_core.exceptions_unified import (
    ErrorCategory,
    ErrorSeverity,
    GraphValidationError,
    InvalidStageError,
    PipelineException,
    PipelineFailedError,
    QueueFullError,
    RetryConfig,
    SessionCorruptedError,
    StageExecutionError,
    StageTimeoutError,
    StateCorruptedError,
    StateError,
    ValidationError,
    WorkerNotAvailableError,
    describe_error,
    get_exception_hierarchy,
)


class TestPipelineException:

    def test_str_includes_category(self):
        exc = PipelineException("boom", category=ErrorCategory.EXECUTION)
        assert str(exc) == "execution: boom"
        assert exc.message == "boom"
        assert exc.kind == "PipelineException"

    def test_context_mirrors_fields(self):
        exc = StageExecutionError("build", "compiler crashed")
        assert exc.context.category == ErrorCategory.EXECUTION
        assert exc.context.details == {"stage": "build"}
        data = exc.to_dict()
        assert data["kind"] == "StageExecutionError"
        assert data["is_recoverable"] is True
        assert "stack_trace" not in data

    def test_validation_errors_are_not_recoverable(self):
        assert ValidationError("bad").is_recoverable is False
        assert InvalidStageError("x", "import").is_recoverable is False
        assert StateError("unreadable").is_recoverable is False

    def test_execution_errors_are_recoverable(self):
        assert StageExecutionError("s", "failed").is_recoverable is True
        timeout = StageTimeoutError("s", 1.5)
        assert timeout.is_recoverable is True
        assert timeout.category == ErrorCategory.TIMEOUT
        assert "1.5s" in timeout.message


class TestSpecificErrors:

    def test_graph_validation_summary_is_truncated(self):
        exc = GraphValidationError([f"problem {i}" for i in range(7)])
        assert exc.errors[-1] == "problem 6"
        assert "(and 2 more)" in exc.message

    def test_session_corrupted_is_state_corrupted(self):
        exc = SessionCorruptedError("s1", "bad json")
        assert isinstance(exc, StateCorruptedError)
        assert exc.severity == ErrorSeverity.CRITICAL
        assert exc.recovery_suggestions

    def test_pipeline_failed_lists_stages(self):
        exc = PipelineFailedError("s1", "greenfield", ["collection", "prd_generation"])
        assert "collection, prd_generation" in exc.message
        assert exc.details["failed_stages"] == ["collection", "prd_generation"]

    def test_worker_not_available(self):
        exc = WorkerNotAvailableError("worker-1", "working")
        assert "worker-1" in exc.message

    def test_queue_full(self):
        exc = QueueFullError("A", 3, 3, reason="lower_priority_than_queue")
        assert "3/3" in exc.message
        assert exc.category == ErrorCategory.RESOURCE
        assert exc.details["reason"] == "lower_priority_than_queue"
        assert "QueueFullError" in get_exception_hierarchy()["WorkerPoolError"]


class TestHelpers:

    def test_describe_error(self):
        assert describe_error(StageExecutionError("s", "agent crashed")) == "agent crashed"
        assert describe_error(RuntimeError("plain")) == "plain"
        assert describe_error(RuntimeError()) == "RuntimeError"

    @pytest.mark.parametrize("attempt,expected", [(0, 5.0), (1, 10.0), (2, 20.0), (4, 60.0)])
    def test_retry_delay(self, attempt, expected):
        assert RetryConfig().get_delay(attempt) == expected

    def test_hierarchy(self):
        hierarchy = get_exception_hierarchy()
        assert "ValidationError" in hierarchy["PipelineException"]
        assert "GraphValidationError" in hierarchy["ValidationError"]
        assert hierarchy["StateCorruptedError"] == ["SessionCorruptedError"]
