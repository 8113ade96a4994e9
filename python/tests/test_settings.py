"""Tests for pipeline_core.config.settings."""

import logging

import pytest
from pydantic import ValidationError

from pipeline_core.config.settings import Settings, get_settings
from pipeline_core.pipeline.orchestrator import ApprovalMode, OrchestratorConfig
from pipeline_core.scheduling.dependency_analyzer import AnalyzerConfig


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ("PIPELINE_MAX_RETRIES", "PIPELINE_LOG_LEVEL", "PIPELINE_APPROVAL_MODE", "PIPELINE_MAX_WORKERS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestSettings:

    def test_defaults(self):
        settings = Settings()
        assert settings.state_dir == ".ad-sdlc/scratchpad"
        assert settings.max_workers == 5
        assert settings.max_retries == 3
        assert settings.retry_base_delay == 5.0
        assert settings.stage_timeout == 300.0
        assert settings.approval_mode == "auto"
        assert settings.queue_max_size == 1000
        assert settings.queue_rejection_policy == "reject"
        assert settings.get_log_level() == logging.INFO

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("PIPELINE_MAX_RETRIES", "1")
        monkeypatch.setenv("PIPELINE_LOG_LEVEL", "debug")
        monkeypatch.setenv("PIPELINE_APPROVAL_MODE", "Critical")
        settings = Settings()
        assert settings.max_retries == 1
        assert settings.log_level == "DEBUG"
        assert settings.approval_mode == "critical"

    def test_env_file(self, tmp_path):
        (tmp_path / ".env").write_text("PIPELINE_MAX_WORKERS=9\n", encoding="utf-8")
        assert Settings().max_workers == 9

    @pytest.mark.parametrize("field,value", [
        ("log_level", "LOUD"),
        ("log_format", "xml"),
        ("approval_mode", "sometimes"),
        ("max_workers", 0),
        ("max_retries", -1),
        ("queue_max_size", 0),
        ("queue_rejection_policy", "drop-newest"),
    ])
    def test_invalid_values_rejected(self, field, value):
        with pytest.raises(ValidationError):
            Settings(**{field: value})

    def test_queue_policy_normalized(self):
        assert Settings(queue_rejection_policy="Drop-Oldest").queue_rejection_policy == "drop-oldest"

    def test_max_delay_not_below_base(self):
        with pytest.raises(ValidationError):
            Settings(retry_base_delay=10.0, retry_max_delay=5.0)

    def test_get_settings_is_cached(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("PIPELINE_MAX_RETRIES", "0")
        assert get_settings() is first
        get_settings.cache_clear()
        assert get_settings().max_retries == 0

    def test_ensure_directories(self, tmp_path):
        Settings(state_dir="state", work_orders_dir="state/progress").ensure_directories()
        assert (tmp_path / "state" / "progress").is_dir()


class TestComponentConfig:

    def test_orchestrator_config_from_settings(self):
        config = OrchestratorConfig.from_settings(Settings(approval_mode="manual"), max_retries=1)
        assert config.approval_mode == ApprovalMode.MANUAL
        assert config.max_retries == 1
        assert config.retry_strategy().total_max_attempts == 2

    def test_analyzer_config_from_settings(self):
        config = AnalyzerConfig.from_settings(Settings(critical_path_weight=0.0))
        assert config.critical_path_weight == 0.0
        assert config.priority_weight == 10.0

    def test_negative_retries_rejected_by_component(self):
        with pytest.raises(ValueError):
            OrchestratorConfig(max_retries=-1)
