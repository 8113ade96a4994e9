"""Pipeline session model and its persistence.

A session is created per run, mutated stage by stage by the orchestrator
and frozen once its status is terminal.  ``SessionRepository`` stores one
record per session in the state store so another process can inspect or
resume it.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pipeline_core.exceptions_unified import (
    SessionCorruptedError,
    SessionNotFoundError,
    StateCorruptedError,
    StateError,
)
from pipeline_core.interfaces.state_store import IStateStore
from pipeline_core.pipeline.stages import PipelineMode

logger = logging.getLogger(__name__)

SESSIONS_NAMESPACE = "pipeline"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ── Status enums ─────────────────────────────────────────────────────


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PipelineStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineStatus.COMPLETED, PipelineStatus.PARTIAL, PipelineStatus.FAILED)


# ── Records ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StageResult:
    """Execution record of one stage in one run."""

    name: str
    agent_type: str = ""
    status: StageStatus = StageStatus.PENDING
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    duration: float = 0.0  # seconds
    retry_count: int = 0
    output: str = ""
    error: Optional[str] = None
    error_kind: Optional[str] = None
    artifacts: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "agent_type": self.agent_type,
            "status": self.status.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration": self.duration,
            "retry_count": self.retry_count,
            "output": self.output,
            "error": self.error,
            "error_kind": self.error_kind,
            "artifacts": list(self.artifacts),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageResult":
        return cls(
            name=data["name"],
            agent_type=data.get("agent_type", ""),
            status=StageStatus(data["status"]),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            duration=float(data.get("duration", 0.0)),
            retry_count=int(data.get("retry_count", 0)),
            output=data.get("output") or "",
            error=data.get("error"),
            error_kind=data.get("error_kind"),
            artifacts=tuple(data.get("artifacts", ())),
        )


@dataclass(frozen=True)
class SessionStatistics:
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    running: int = 0
    total_duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "running": self.running,
            "total_duration": self.total_duration,
        }


@dataclass(frozen=True)
class MonitorSnapshot:
    """Read-only projection of a session for progress reporting."""

    session_id: str
    mode: str
    status: str
    total_stages: int
    completed_stages: int
    failed_stages: int
    skipped_stages: int
    current_stage: Optional[str]
    elapsed: float
    stage_summaries: Tuple[Dict[str, Any], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "mode": self.mode,
            "status": self.status,
            "total_stages": self.total_stages,
            "completed_stages": self.completed_stages,
            "failed_stages": self.failed_stages,
            "skipped_stages": self.skipped_stages,
            "current_stage": self.current_stage,
            "elapsed": self.elapsed,
            "stage_summaries": [dict(s) for s in self.stage_summaries],
        }


# ── Session ──────────────────────────────────────────────────────────


@dataclass
class OrchestratorSession:
    """Top-level state of one pipeline run."""

    session_id: str
    mode: PipelineMode
    project_dir: str = "."
    user_request: str = ""
    status: PipelineStatus = PipelineStatus.PENDING
    stage_results: List[StageResult] = field(default_factory=list)
    pre_completed_stages: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=lambda: utcnow().isoformat())
    updated_at: str = field(default_factory=lambda: utcnow().isoformat())
    resumed_from: Optional[str] = None

    @classmethod
    def new(cls, mode: PipelineMode, **kwargs: Any) -> "OrchestratorSession":
        return cls(session_id=str(uuid.uuid4()), mode=PipelineMode(mode), **kwargs)

    # ── Mutation (orchestrator only) ────────────────────────────────

    def _ensure_mutable(self) -> None:
        if self.status.is_terminal:
            raise StateError(f"Session {self.session_id} is {self.status.value} and can no longer change")

    def _touch(self) -> None:
        self.updated_at = utcnow().isoformat()

    def record(self, result: StageResult) -> None:
        """Insert or replace the result for ``result.name`` (first-seen order kept)."""
        self._ensure_mutable()
        for i, existing in enumerate(self.stage_results):
            if existing.name == result.name:
                self.stage_results[i] = result
                break
        else:
            self.stage_results.append(result)
        self._touch()

    def set_status(self, status: PipelineStatus) -> None:
        self._ensure_mutable()
        self.status = PipelineStatus(status)
        self._touch()

    # ── Queries ─────────────────────────────────────────────────────

    def result_for(self, name: str) -> Optional[StageResult]:
        for result in self.stage_results:
            if result.name == name:
                return result
        return None

    def names_with_status(self, status: StageStatus) -> List[str]:
        return [r.name for r in self.stage_results if r.status == status]

    @property
    def current_stage(self) -> Optional[str]:
        running = self.names_with_status(StageStatus.RUNNING)
        return running[0] if running else None

    def statistics(self) -> SessionStatistics:
        counts = {s: 0 for s in StageStatus}
        for result in self.stage_results:
            counts[result.status] += 1
        return SessionStatistics(
            total=len(self.stage_results),
            completed=counts[StageStatus.COMPLETED],
            failed=counts[StageStatus.FAILED],
            skipped=counts[StageStatus.SKIPPED],
            running=counts[StageStatus.RUNNING],
            total_duration=round(sum(r.duration for r in self.stage_results), 6),
        )

    def snapshot(self, total_stages: int, now: Optional[datetime] = None) -> MonitorSnapshot:
        stats = self.statistics()
        end = _parse_ts(self.updated_at) if self.status.is_terminal else (now or utcnow())
        start = _parse_ts(self.created_at)
        elapsed = max((end - start).total_seconds(), 0.0) if start and end else 0.0
        return MonitorSnapshot(
            session_id=self.session_id,
            mode=self.mode.value,
            status=self.status.value,
            total_stages=total_stages,
            completed_stages=stats.completed,
            failed_stages=stats.failed,
            skipped_stages=stats.skipped,
            current_stage=self.current_stage,
            elapsed=elapsed,
            stage_summaries=tuple(
                {
                    "name": r.name,
                    "status": r.status.value,
                    "duration": r.duration,
                    "retry_count": r.retry_count,
                    "error": r.error,
                }
                for r in self.stage_results
            ),
        )

    def copy(self) -> "OrchestratorSession":
        return replace(
            self,
            stage_results=list(self.stage_results),
            pre_completed_stages=list(self.pre_completed_stages),
        )

    # ── Serialisation ───────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "mode": self.mode.value,
            "project_dir": self.project_dir,
            "user_request": self.user_request,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "resumed_from": self.resumed_from,
            "pre_completed_stages": list(self.pre_completed_stages),
            "stages": [r.to_dict() for r in self.stage_results],
            "statistics": self.statistics().to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrchestratorSession":
        return cls(
            session_id=data["session_id"],
            mode=PipelineMode(data["mode"]),
            project_dir=data.get("project_dir", "."),
            user_request=data.get("user_request", ""),
            status=PipelineStatus(data["status"]),
            stage_results=[StageResult.from_dict(s) for s in data.get("stages", [])],
            pre_completed_stages=list(data.get("pre_completed_stages", [])),
            created_at=data["created_at"],
            updated_at=data.get("updated_at", data["created_at"]),
            resumed_from=data.get("resumed_from"),
        )


# ── Repository ───────────────────────────────────────────────────────


class SessionRepository:
    """Persists sessions as one record per session id."""

    def __init__(self, store: IStateStore, namespace: str = SESSIONS_NAMESPACE) -> None:
        self.store = store
        self.namespace = namespace

    def save(self, session: OrchestratorSession) -> None:
        self.store.save(self.namespace, session.session_id, session.to_dict())

    def exists(self, session_id: str) -> bool:
        return self.store.exists(self.namespace, session_id)

    def load(self, session_id: str) -> OrchestratorSession:
        """Load a persisted session.

        Raises:
            SessionNotFoundError: no record for *session_id*.
            SessionCorruptedError: the record exists but is unreadable or
                structurally invalid.
        """
        try:
            data = self.store.load(self.namespace, session_id)
        except StateCorruptedError as exc:
            raise SessionCorruptedError(session_id, exc.reason) from exc
        if data is None:
            raise SessionNotFoundError(session_id)
        try:
            session = OrchestratorSession.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise SessionCorruptedError(session_id, f"invalid session record: {exc!r}") from exc
        if session.session_id != session_id:
            raise SessionCorruptedError(
                session_id, f"record belongs to session {session.session_id}"
            )
        return session

    def list_sessions(self) -> List[str]:
        return self.store.list_keys(self.namespace)

    def find_latest(self) -> Optional[str]:
        """Id of the most recently updated readable session, or ``None``."""
        latest: Optional[Tuple[datetime, str]] = None
        for session_id in self.list_sessions():
            try:
                session = self.load(session_id)
            except SessionCorruptedError as exc:
                logger.warning("Skipping unreadable session %s: %s", session_id, exc.reason)
                continue
            stamp = _parse_ts(session.updated_at) or datetime.min.replace(tzinfo=timezone.utc)
            if latest is None or stamp > latest[0]:
                latest = (stamp, session_id)
        return latest[1] if latest else None
