"""Tests for pipeline_core.pipeline.session."""

from datetime import datetime, timedelta, timezone

import pytest

from pipeline_core.exceptions_unified import (
    SessionCorruptedError,
    SessionNotFoundError,
    StateCorruptedError,
    StateError,
)
from pipeline_core.persistence.state_store import InMemoryStateStore, JsonFileStateStore
from pipeline_core.pipeline.session import (
    SESSIONS_NAMESPACE,
    OrchestratorSession,
    PipelineStatus,
    SessionRepository,
    StageResult,
    StageStatus,
)
from pipeline_core.pipeline.stages import PipelineMode


# -- Fixtures --------------------------------------------------------------


@pytest.fixture
def session():
    s = OrchestratorSession.new(PipelineMode.GREENFIELD, project_dir="/tmp/project", user_request="build it")
    s.set_status(PipelineStatus.RUNNING)
    s.record(StageResult("initialization", "project-initializer", StageStatus.COMPLETED,
                         duration=1.5, output="initialized"))
    s.record(StageResult("mode_detection", "mode-detector", StageStatus.FAILED,
                         duration=0.5, retry_count=2, error="timeout", error_kind="StageTimeoutError"))
    s.record(StageResult("collection", "collector", StageStatus.SKIPPED,
                         error="Skipped due to failed or missing dependencies"))
    return s


# ========================================================================
# SESSION MODEL
# ========================================================================


class TestSessionModel:

    def test_new_generates_unique_ids(self):
        a = OrchestratorSession.new(PipelineMode.IMPORT)
        b = OrchestratorSession.new(PipelineMode.IMPORT)
        assert a.session_id != b.session_id
        assert a.status == PipelineStatus.PENDING

    def test_record_replaces_by_name_keeping_order(self, session):
        session.record(StageResult("initialization", "project-initializer", StageStatus.FAILED))
        assert [r.name for r in session.stage_results] == ["initialization", "mode_detection", "collection"]
        assert session.result_for("initialization").status == StageStatus.FAILED

    def test_statistics(self, session):
        stats = session.statistics()
        assert (stats.total, stats.completed, stats.failed, stats.skipped) == (3, 1, 1, 1)
        assert stats.total_duration == 2.0

    def test_terminal_session_is_immutable(self, session):
        session.set_status(PipelineStatus.PARTIAL)
        with pytest.raises(StateError):
            session.record(StageResult("prd_generation", "prd-writer", StageStatus.COMPLETED))
        with pytest.raises(StateError):
            session.set_status(PipelineStatus.RUNNING)

    def test_current_stage(self, session):
        assert session.current_stage is None
        session.record(StageResult("prd_generation", "prd-writer", StageStatus.RUNNING))
        assert session.current_stage == "prd_generation"

    def test_snapshot_does_not_mutate(self, session):
        before = session.to_dict()
        created = datetime.fromisoformat(session.created_at)
        snap = session.snapshot(total_stages=12, now=created + timedelta(seconds=42))
        assert snap.elapsed == pytest.approx(42.0)
        assert snap.total_stages == 12
        assert (snap.completed_stages, snap.failed_stages, snap.skipped_stages) == (1, 1, 1)
        assert [s["name"] for s in snap.stage_summaries][0] == "initialization"
        assert session.to_dict() == before

    def test_copy_is_independent(self, session):
        clone = session.copy()
        clone.record(StageResult("prd_generation", "prd-writer", StageStatus.COMPLETED))
        assert session.result_for("prd_generation") is None


# ========================================================================
# PERSISTENCE
# ========================================================================


class TestSessionRepository:

    def test_round_trip_through_files(self, session, tmp_path):
        SessionRepository(JsonFileStateStore(tmp_path)).save(session)
        loaded = SessionRepository(JsonFileStateStore(tmp_path)).load(session.session_id)

        assert loaded.mode == session.mode
        assert loaded.status == session.status
        assert [(r.name, r.status) for r in loaded.stage_results] == [
            (r.name, r.status) for r in session.stage_results
        ]
        assert loaded.stage_results[1].retry_count == 2
        assert loaded.stage_results[1].error_kind == "StageTimeoutError"
        assert loaded.to_dict() == session.to_dict()

    def test_record_contains_statistics(self, session):
        store = InMemoryStateStore()
        SessionRepository(store).save(session)
        record = store.load(SESSIONS_NAMESPACE, session.session_id)
        assert record["statistics"]["failed"] == 1
        assert record["stages"][0]["output"] == "initialized"

    def test_missing_session(self):
        with pytest.raises(SessionNotFoundError):
            SessionRepository(InMemoryStateStore()).load("absent")

    def test_unreadable_session_is_corrupted_not_missing(self):
        store = InMemoryStateStore()
        store.put_raw(SESSIONS_NAMESPACE, "s1", "{oops")
        with pytest.raises(SessionCorruptedError) as exc_info:
            SessionRepository(store).load("s1")
        assert isinstance(exc_info.value, StateCorruptedError)

    def test_structurally_invalid_session_is_corrupted(self):
        store = InMemoryStateStore()
        store.save(SESSIONS_NAMESPACE, "s1", {"session_id": "s1", "mode": "unknown-mode"})
        with pytest.raises(SessionCorruptedError):
            SessionRepository(store).load("s1")

    def test_mismatched_id_is_corrupted(self, session):
        store = InMemoryStateStore()
        store.save(SESSIONS_NAMESPACE, "other", session.to_dict())
        with pytest.raises(SessionCorruptedError):
            SessionRepository(store).load("other")

    def test_find_latest_skips_corrupted(self):
        store = InMemoryStateStore()
        repo = SessionRepository(store)
        old = OrchestratorSession.new(PipelineMode.GREENFIELD)
        new = OrchestratorSession.new(PipelineMode.GREENFIELD)
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        old.updated_at = base.isoformat()
        new.updated_at = (base + timedelta(hours=1)).isoformat()
        repo.save(old)
        repo.save(new)
        store.put_raw(SESSIONS_NAMESPACE, "zzz-broken", "{")

        assert repo.find_latest() == new.session_id
        assert sorted(repo.list_sessions()) == sorted([old.session_id, new.session_id, "zzz-broken"])

    def test_find_latest_empty(self):
        assert SessionRepository(InMemoryStateStore()).find_latest() is None
