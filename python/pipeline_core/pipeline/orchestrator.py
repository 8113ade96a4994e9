"""Pipeline orchestrator: runs a mode's stages in dependency order.

Responsibilities:
- Start, resume (from a persisted session) or start-from-stage sessions
- Re-validate pre-completed stages through the artifact validator
- Invoke each stage through ``IAgentInvoker`` with timeout and retries
- Cascade ``skipped`` to dependents of failed, skipped or denied stages
- Persist the session after every stage transition
- Report ``completed`` / ``partial`` / ``failed`` without raising for
  stage-local failures

One coordinating coroutine owns the session; concurrently executed
parallel stages only compute results, which the coordinator records.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from pipeline_core.enhanced_logging import track_performance
from pipeline_core.exceptions_unified import (
    InvalidProjectDirError,
    InvalidStageError,
    PipelineFailedError,
    PipelineInProgressError,
    StageExecutionError,
    StageTimeoutError,
    StatePersistenceError,
    describe_error,
)
from pipeline_core.interfaces.agent_invoker import IAgentInvoker
from pipeline_core.interfaces.artifact_validator import IArtifactValidator
from pipeline_core.interfaces.state_store import IStateStore
from pipeline_core.persistence.state_store import JsonFileStateStore
from pipeline_core.pipeline.artifact_validator import ArtifactValidator
from pipeline_core.pipeline.session import (
    MonitorSnapshot,
    OrchestratorSession,
    PipelineStatus,
    SessionRepository,
    StageResult,
    StageStatus,
    utcnow,
)
from pipeline_core.pipeline.stages import (
    PipelineMode,
    StageCatalogs,
    StageDefinition,
    downstream_of,
    get_stages_for_mode,
    stage_execution_order,
    stages_before,
)
from pipeline_core.scheduling.retry_strategies import RetryStrategy

logger = logging.getLogger(__name__)

DEPENDENCY_SKIP_MESSAGE = "Skipped due to failed or missing dependencies"
CANCELLED_MESSAGE = "Pipeline cancelled before the stage could run"


# ── Configuration / value objects ────────────────────────────────────


class ApprovalMode(str, Enum):
    AUTO = "auto"  # approve everything
    MANUAL = "manual"  # approved in non-interactive runs
    CRITICAL = "critical"  # deny once any stage has failed
    CUSTOM = "custom"  # delegate to the injected approver


@dataclass(frozen=True)
class ApprovalDecision:
    approved: bool
    reason: str
    decided_by: str = "system"
    decided_at: str = field(default_factory=lambda: utcnow().isoformat())


Approver = Callable[[StageDefinition, Sequence[StageResult]], Awaitable[ApprovalDecision]]


@dataclass
class OrchestratorConfig:
    """Orchestrator tuning.  Times are in seconds."""

    state_dir: str = ".ad-sdlc/scratchpad"
    docs_dir: str = "docs"
    max_retries: int = 3
    retry_base_delay: float = 5.0
    retry_max_delay: float = 60.0
    stage_timeout: float = 300.0
    stage_timeouts: Dict[str, float] = field(default_factory=dict)
    approval_mode: ApprovalMode = ApprovalMode.AUTO
    raise_on_failure: bool = False

    def __post_init__(self) -> None:
        self.approval_mode = ApprovalMode(self.approval_mode)
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> "OrchestratorConfig":
        values: Dict[str, Any] = {
            "state_dir": settings.state_dir,
            "docs_dir": settings.docs_dir,
            "max_retries": settings.max_retries,
            "retry_base_delay": settings.retry_base_delay,
            "retry_max_delay": settings.retry_max_delay,
            "stage_timeout": settings.stage_timeout,
            "approval_mode": settings.approval_mode,
        }
        values.update(overrides)
        return cls(**values)

    def timeout_for(self, stage_name: str) -> float:
        return self.stage_timeouts.get(stage_name, self.stage_timeout)

    def retry_strategy(self) -> RetryStrategy:
        return RetryStrategy(
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )


@dataclass(frozen=True)
class PipelineRequest:
    """What to run.  At most one of resume / start-from / pre-completed applies."""

    project_dir: str
    user_request: str = ""
    mode: Optional[PipelineMode] = None
    project_id: Optional[str] = None
    resume_session_id: Optional[str] = None
    start_from_stage: Optional[str] = None
    pre_completed_stages: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PipelineResult:
    pipeline_id: str
    project_id: str
    mode: PipelineMode
    stages: Tuple[StageResult, ...]
    overall_status: PipelineStatus
    duration: float
    artifacts: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()

    @property
    def failed_stages(self) -> List[str]:
        return [s.name for s in self.stages if s.status == StageStatus.FAILED]

    @property
    def skipped_stages(self) -> List[str]:
        return [s.name for s in self.stages if s.status == StageStatus.SKIPPED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "project_id": self.project_id,
            "mode": self.mode.value,
            "overall_status": self.overall_status.value,
            "duration": self.duration,
            "stages": [s.to_dict() for s in self.stages],
            "artifacts": list(self.artifacts),
            "warnings": list(self.warnings),
        }


def determine_overall_status(
    results: Sequence[StageResult], pre_completed: Sequence[str] = ()
) -> PipelineStatus:
    """Terminal status for a run.

    Pre-completed stages without a result of their own count as completions.
    """
    recorded = {r.name for r in results}
    completions = sum(1 for r in results if r.status == StageStatus.COMPLETED)
    completions += sum(1 for name in pre_completed if name not in recorded)
    problems = any(r.status in (StageStatus.FAILED, StageStatus.SKIPPED) for r in results)

    if completions == 0:
        return PipelineStatus.FAILED if results else PipelineStatus.COMPLETED
    return PipelineStatus.PARTIAL if problems else PipelineStatus.COMPLETED


class DefaultAgentInvoker:
    """Invoker used when no agent backend is wired in: reports the stage only."""

    async def invoke(self, stage: StageDefinition, session: OrchestratorSession) -> str:
        return f'Stage "{stage.name}" executed by {stage.agent_type}'


# ── Orchestrator ─────────────────────────────────────────────────────


class PipelineOrchestrator:
    """Runs one session at a time.

    Args:
        invoker: Executes the agent behind each stage.
        config: Orchestrator tuning (defaults when omitted).
        store: State store for sessions.  Defaults to a JSON store under
            ``<project_dir>/<state_dir>``.
        artifact_validator: Defaults to ``ArtifactValidator`` on the
            session's project directory.
        approver: Used when ``approval_mode`` is ``custom``.
        sleep: Backoff sleep (inject a no-op coroutine in tests).
        catalogs: Stage catalogs per mode (defaults to the built-in ones).
    """

    def __init__(
        self,
        invoker: Optional[IAgentInvoker] = None,
        config: Optional[OrchestratorConfig] = None,
        store: Optional[IStateStore] = None,
        artifact_validator: Optional[IArtifactValidator] = None,
        approver: Optional[Approver] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        catalogs: Optional[StageCatalogs] = None,
    ) -> None:
        self.invoker: IAgentInvoker = invoker or DefaultAgentInvoker()
        self.config = config or OrchestratorConfig()
        self._store = store
        self._artifact_validator = artifact_validator
        self._approver = approver
        self._sleep = sleep
        self._catalogs = catalogs

        self._session: Optional[OrchestratorSession] = None
        self._repository: Optional[SessionRepository] = None
        self._project_id: str = ""
        self._warnings: List[str] = []
        self._running = False
        self._cancelled = False

    # ── Session lifecycle ────────────────────────────────────────────

    @property
    def session(self) -> Optional[OrchestratorSession]:
        return self._session

    def repository_for(self, project_dir: str) -> SessionRepository:
        store = self._store or JsonFileStateStore(Path(project_dir) / self.config.state_dir)
        return SessionRepository(store)

    def start_session(self, request: PipelineRequest) -> OrchestratorSession:
        """Create (and persist) the session *request* describes.

        Raises:
            PipelineInProgressError: a session is already running.
            InvalidProjectDirError: the project directory is unusable.
            InvalidStageError: an unknown stage was named.
            SessionNotFoundError / SessionCorruptedError: resume target.
        """
        if self._running or (self._session and self._session.status == PipelineStatus.RUNNING):
            raise PipelineInProgressError(self._session.session_id if self._session else "")

        self._validate_project_dir(request.project_dir)
        repository = self.repository_for(request.project_dir)
        self._warnings = []
        self._cancelled = False

        if request.resume_session_id:
            session = self._resumed_session(repository, request)
        else:
            mode = PipelineMode(request.mode or PipelineMode.GREENFIELD)
            session = OrchestratorSession.new(
                mode,
                project_dir=request.project_dir,
                user_request=request.user_request,
                pre_completed_stages=self._initial_pre_completed(mode, request),
            )

        self._revalidate_pre_completed(session)
        self._repository = repository
        self._session = session
        self._project_id = request.project_id or Path(request.project_dir).resolve().name
        repository.save(session)
        logger.info(
            "Started %s session %s (%d pre-completed stage(s)%s)",
            session.mode.value, session.session_id, len(session.pre_completed_stages),
            f", resumed from {session.resumed_from}" if session.resumed_from else "",
        )
        return session

    def _resumed_session(
        self, repository: SessionRepository, request: PipelineRequest
    ) -> OrchestratorSession:
        prior = repository.load(request.resume_session_id)
        if request.mode is not None and PipelineMode(request.mode) != prior.mode:
            self._warnings.append(
                f"Requested mode {PipelineMode(request.mode).value} ignored; "
                f"resuming {prior.mode.value} session {prior.session_id}"
            )
        carried = [r for r in prior.stage_results if r.status == StageStatus.COMPLETED]
        known = {s.name for s in get_stages_for_mode(prior.mode, self._catalogs)}
        carried = [r for r in carried if r.name in known]
        return OrchestratorSession.new(
            prior.mode,
            project_dir=request.project_dir,
            user_request=request.user_request or prior.user_request,
            stage_results=list(carried),
            pre_completed_stages=[r.name for r in carried],
            resumed_from=prior.session_id,
        )

    def _initial_pre_completed(self, mode: PipelineMode, request: PipelineRequest) -> List[str]:
        if request.start_from_stage:
            return stages_before(mode, request.start_from_stage, self._catalogs)
        known = {s.name for s in get_stages_for_mode(mode, self._catalogs)}
        for name in request.pre_completed_stages:
            if name not in known:
                raise InvalidStageError(name, mode.value)
        return list(dict.fromkeys(request.pre_completed_stages))

    def _revalidate_pre_completed(self, session: OrchestratorSession) -> None:
        if not session.pre_completed_stages:
            return
        validator = self._artifact_validator or ArtifactValidator(
            session.project_dir, state_dir=self.config.state_dir, docs_dir=self.config.docs_dir
        )
        invalid = validator.validate_pre_completed_stages(session.pre_completed_stages, session.mode)
        if not invalid:
            return
        stages = get_stages_for_mode(session.mode, self._catalogs)
        dropped = set(invalid) | downstream_of(stages, invalid)
        session.pre_completed_stages = [s for s in session.pre_completed_stages if s not in dropped]
        session.stage_results = [r for r in session.stage_results if r.name not in dropped]
        for name in invalid:
            self._warnings.append(f"Stage {name} failed artifact validation and will be re-executed")

    @staticmethod
    def _validate_project_dir(project_dir: str) -> None:
        path = Path(project_dir)
        if not path.exists():
            raise InvalidProjectDirError(project_dir, "Directory does not exist")
        if not path.is_dir():
            raise InvalidProjectDirError(project_dir, "Path is not a directory")

    # ── Execution ────────────────────────────────────────────────────

    @track_performance
    async def execute_pipeline(self, request: Optional[PipelineRequest] = None) -> PipelineResult:
        """Run the session *request* describes, or the pending one.

        A *request* always starts a new session; a pending session that was
        never run is replaced.  Without a request a pending session must
        exist.

        Stage failures never raise; the result carries ``partial`` or
        ``failed``.  ``PipelineFailedError`` is raised only when
        ``config.raise_on_failure`` is set and the run failed.
        """
        if self._running:
            raise PipelineInProgressError(self._session.session_id if self._session else "")
        pending = self._session is not None and self._session.status == PipelineStatus.PENDING
        if request is not None:
            if pending:
                logger.warning(
                    "Replacing pending session %s with a new request", self._session.session_id
                )
            self.start_session(request)
        elif not pending:
            raise ValueError("No pending session; pass a PipelineRequest")

        session = self._session
        repository = self._repository
        assert session is not None and repository is not None
        self._running = True
        started = time.monotonic()
        try:
            session.set_status(PipelineStatus.RUNNING)
            repository.save(session)
            await self._execute_stages(session, repository)

            status = determine_overall_status(session.stage_results, session.pre_completed_stages)
            session.set_status(status)
            repository.save(session)
        except BaseException:
            if not session.status.is_terminal:
                session.set_status(PipelineStatus.FAILED)
                self._save_after_error(repository, session)
            raise
        finally:
            self._running = False

        result = self._build_result(session, time.monotonic() - started)
        log = logger.info if status == PipelineStatus.COMPLETED else logger.warning
        log(
            "Pipeline %s finished %s in %.2fs (failed: %s; skipped: %s)",
            session.session_id, status.value, result.duration,
            ", ".join(result.failed_stages) or "none", ", ".join(result.skipped_stages) or "none",
        )
        if status == PipelineStatus.FAILED and self.config.raise_on_failure:
            raise PipelineFailedError(session.session_id, session.mode.value, result.failed_stages)
        return result

    async def _execute_stages(self, session: OrchestratorSession, repository: SessionRepository) -> None:
        order = stage_execution_order(get_stages_for_mode(session.mode, self._catalogs))
        completed: Set[str] = set(session.pre_completed_stages)
        remaining = [s for s in order if s.name not in completed]

        while remaining:
            if self._cancelled:
                for stage in remaining:
                    self._record_skip(session, repository, stage, CANCELLED_MESSAGE, "Cancelled")
                return

            ready: List[StageDefinition] = []
            waiting: List[StageDefinition] = []
            for stage in remaining:
                if self._has_failed_dependency(session, stage):
                    self._record_skip(session, repository, stage, DEPENDENCY_SKIP_MESSAGE, "DependencyFailed")
                elif all(dep in completed for dep in stage.depends_on):
                    ready.append(stage)
                else:
                    waiting.append(stage)

            if not ready:
                for stage in waiting:
                    self._record_skip(session, repository, stage, DEPENDENCY_SKIP_MESSAGE, "DependencyFailed")
                return

            parallel = [s for s in ready if s.parallel]
            if len(parallel) > 1:
                approved = [s for s in parallel if await self._approve(session, repository, s)]
                for stage in approved:
                    self._record_running(session, repository, stage)
                results = await asyncio.gather(*(self._attempt_stage(s, session) for s in approved))
                for result in results:
                    self._record_result(session, repository, result, completed)
                sequential = [s for s in ready if not s.parallel]
            else:
                sequential = ready

            for stage in sequential:
                if self._cancelled:
                    self._record_skip(session, repository, stage, CANCELLED_MESSAGE, "Cancelled")
                    continue
                if not await self._approve(session, repository, stage):
                    continue
                self._record_running(session, repository, stage)
                result = await self._attempt_stage(stage, session)
                self._record_result(session, repository, result, completed)

            remaining = waiting

    @staticmethod
    def _has_failed_dependency(session: OrchestratorSession, stage: StageDefinition) -> bool:
        for dep in stage.depends_on:
            result = session.result_for(dep)
            if result is not None and result.status in (StageStatus.FAILED, StageStatus.SKIPPED):
                return True
        return False

    async def _attempt_stage(self, stage: StageDefinition, session: OrchestratorSession) -> StageResult:
        """Invoke *stage* with timeout and retries; never raises for stage errors."""
        started_at = utcnow().isoformat()
        started = time.monotonic()
        attempts = 0
        strategy = self.config.retry_strategy()

        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            logger.warning(
                "Stage %s attempt %d/%d failed (%s); retrying in %.1fs",
                stage.name, attempt, strategy.total_max_attempts, describe_error(error), delay,
            )

        try:
            async for attempt in strategy.retrying(
                sleep=self._sleep, should_stop=lambda: self._cancelled, on_retry=on_retry
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    output = await self._invoke(stage, session)
        except Exception as exc:
            logger.warning(
                "Stage %s failed after %d attempt(s): %s", stage.name, attempts, describe_error(exc)
            )
            return StageResult(
                name=stage.name,
                agent_type=stage.agent_type,
                status=StageStatus.FAILED,
                started_at=started_at,
                finished_at=utcnow().isoformat(),
                duration=time.monotonic() - started,
                retry_count=max(attempts - 1, 0),
                error=describe_error(exc),
                error_kind=type(exc).__name__,
            )

        return StageResult(
            name=stage.name,
            agent_type=stage.agent_type,
            status=StageStatus.COMPLETED,
            started_at=started_at,
            finished_at=utcnow().isoformat(),
            duration=time.monotonic() - started,
            retry_count=attempts - 1,
            output=output,
        )

    async def _invoke(self, stage: StageDefinition, session: OrchestratorSession) -> str:
        timeout = self.config.timeout_for(stage.name)
        try:
            output = await asyncio.wait_for(self.invoker.invoke(stage, session.copy()), timeout)
        except asyncio.TimeoutError as exc:
            raise StageTimeoutError(stage.name, timeout) from exc
        if not isinstance(output, str) or not output.strip():
            raise StageExecutionError(stage.name, f"Agent {stage.agent_type} returned no output")
        return output

    async def _approve(
        self, session: OrchestratorSession, repository: SessionRepository, stage: StageDefinition
    ) -> bool:
        decision = await self._check_approval(stage, session)
        if not decision.approved:
            self._record_skip(
                session, repository, stage, f"Approval denied: {decision.reason}", "ApprovalDenied"
            )
        return decision.approved

    async def _check_approval(self, stage: StageDefinition, session: OrchestratorSession) -> ApprovalDecision:
        if not stage.approval_required:
            return ApprovalDecision(approved=True, reason="No approval required")

        mode = self.config.approval_mode
        if mode == ApprovalMode.AUTO:
            return ApprovalDecision(approved=True, reason="Auto-approved")
        if mode == ApprovalMode.MANUAL:
            return ApprovalDecision(approved=True, reason="Manual mode (approved in non-interactive run)")
        if mode == ApprovalMode.CRITICAL:
            if session.names_with_status(StageStatus.FAILED):
                return ApprovalDecision(
                    approved=False, reason="Prior stage failures detected in critical approval mode"
                )
            return ApprovalDecision(approved=True, reason="No prior failures in critical mode")
        if self._approver is None:
            return ApprovalDecision(approved=True, reason="Custom approval (no approver configured)")
        return await self._approver(stage, list(session.stage_results))

    # ── Session transitions (coordinator only) ───────────────────────

    def _record_running(
        self, session: OrchestratorSession, repository: SessionRepository, stage: StageDefinition
    ) -> None:
        session.record(StageResult(
            name=stage.name,
            agent_type=stage.agent_type,
            status=StageStatus.RUNNING,
            started_at=utcnow().isoformat(),
        ))
        repository.save(session)
        logger.info("Stage %s started (%s)", stage.name, stage.agent_type)

    def _record_result(
        self,
        session: OrchestratorSession,
        repository: SessionRepository,
        result: StageResult,
        completed: Set[str],
    ) -> None:
        session.record(result)
        repository.save(session)
        if result.status == StageStatus.COMPLETED:
            completed.add(result.name)
            logger.info(
                "Stage %s completed in %.2fs (retries: %d)", result.name, result.duration, result.retry_count
            )

    def _record_skip(
        self,
        session: OrchestratorSession,
        repository: SessionRepository,
        stage: StageDefinition,
        message: str,
        kind: str,
    ) -> None:
        now = utcnow().isoformat()
        session.record(StageResult(
            name=stage.name,
            agent_type=stage.agent_type,
            status=StageStatus.SKIPPED,
            started_at=now,
            finished_at=now,
            error=message,
            error_kind=kind,
        ))
        repository.save(session)
        logger.warning("Stage %s skipped: %s", stage.name, message)

    @staticmethod
    def _save_after_error(repository: SessionRepository, session: OrchestratorSession) -> None:
        try:
            repository.save(session)
        except StatePersistenceError:
            logger.error("Could not persist failed session %s", session.session_id, exc_info=True)

    def _build_result(self, session: OrchestratorSession, duration: float) -> PipelineResult:
        warnings = list(self._warnings)
        failed = session.names_with_status(StageStatus.FAILED)
        skipped = session.names_with_status(StageStatus.SKIPPED)
        if session.status in (PipelineStatus.PARTIAL, PipelineStatus.FAILED):
            stats = session.statistics()
            warnings.append(
                f"Pipeline {session.status.value}: {stats.failed} stage(s) failed, "
                f"{stats.skipped} skipped, {stats.completed} completed"
            )
            if failed:
                warnings.append("Failed stages: " + ", ".join(failed))
            if skipped:
                warnings.append("Skipped stages: " + ", ".join(skipped))
        return PipelineResult(
            pipeline_id=session.session_id,
            project_id=self._project_id,
            mode=session.mode,
            stages=tuple(session.stage_results),
            overall_status=session.status,
            duration=duration,
            artifacts=tuple(a for r in session.stage_results for a in r.artifacts),
            warnings=tuple(warnings),
        )

    # ── Observation / teardown ───────────────────────────────────────

    def get_status(self) -> Tuple[PipelineStatus, List[StageResult]]:
        if self._session is None:
            return PipelineStatus.PENDING, []
        return self._session.status, list(self._session.stage_results)

    def monitor_pipeline(
        self, session_id: Optional[str] = None, project_dir: Optional[str] = None
    ) -> MonitorSnapshot:
        """Read-only snapshot of the current session or a persisted one."""
        session = self._session
        if session_id is not None and (session is None or session.session_id != session_id):
            repository = self.repository_for(project_dir) if project_dir else self._repository
            if repository is None:
                raise ValueError("project_dir is required to monitor a persisted session")
            session = repository.load(session_id)

        if session is None:
            return MonitorSnapshot(
                session_id="",
                mode=PipelineMode.GREENFIELD.value,
                status=PipelineStatus.PENDING.value,
                total_stages=0,
                completed_stages=0,
                failed_stages=0,
                skipped_stages=0,
                current_stage=None,
                elapsed=0.0,
            )
        total = len(get_stages_for_mode(session.mode, self._catalogs))
        return session.snapshot(total_stages=total)

    def cancel(self) -> None:
        """Stop after the current attempt; remaining stages are skipped."""
        self._cancelled = True

    def dispose(self) -> None:
        """Cancel any run and drop the session reference.  Safe at any point."""
        self.cancel()
        if not self._running:
            self._session = None
            self._repository = None
