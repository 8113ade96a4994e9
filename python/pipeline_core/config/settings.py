"""
Configuration management using Pydantic Settings.
Every value can be overridden through ``PIPELINE_*`` environment variables
or a ``.env`` file; explicit constructor arguments on components win.
"""
import logging
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pipeline core settings with validation and environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="PIPELINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # State store
    state_dir: str = Field(default=".ad-sdlc/scratchpad", description="Root of the persisted state store")
    work_orders_dir: str = Field(
        default=".ad-sdlc/scratchpad/progress",
        description="Directory holding controller state and work order records",
    )
    docs_dir: str = Field(default="docs", description="Directory holding generated documents")

    # Worker pool
    max_workers: int = Field(default=5, ge=1, le=64, description="Number of execution slots")
    queue_max_size: int = Field(default=1000, ge=1, description="Work queue capacity")
    queue_rejection_policy: str = Field(
        default="reject", description="Full queue policy: reject, drop-oldest, drop-lowest-priority"
    )
    dead_letter_max_size: int = Field(default=100, ge=0, description="Evicted queue entries kept for retry")

    # Retry
    max_retries: int = Field(default=3, ge=0, le=10, description="Retries per stage after the first attempt")
    retry_base_delay: float = Field(default=5.0, ge=0.0, description="Base backoff delay in seconds")
    retry_max_delay: float = Field(default=60.0, ge=0.0, description="Backoff ceiling in seconds")

    # Orchestrator
    stage_timeout: float = Field(default=300.0, gt=0, description="Per-stage timeout in seconds")
    approval_mode: str = Field(default="auto", description="Approval mode: auto, manual, critical, custom")

    # Priority scoring
    priority_weight: float = Field(default=10.0, ge=0.0, description="Weight of the priority class")
    dependent_weight: float = Field(default=5.0, ge=0.0, description="Bonus per direct dependent")
    critical_path_weight: float = Field(default=20.0, ge=0.0, description="Bonus for critical path items")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format: json or text")
    log_file: Optional[str] = Field(default=None, description="Log file path")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"Log level must be one of {allowed}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is valid."""
        allowed = ["json", "text"]
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"Log format must be one of {allowed}")
        return v_lower

    @field_validator("approval_mode")
    @classmethod
    def validate_approval_mode(cls, v: str) -> str:
        """Validate approval mode."""
        allowed = ["auto", "manual", "critical", "custom"]
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"Approval mode must be one of {allowed}")
        return v_lower

    @field_validator("queue_rejection_policy")
    @classmethod
    def validate_queue_rejection_policy(cls, v: str) -> str:
        """Validate full queue policy."""
        allowed = ["reject", "drop-oldest", "drop-lowest-priority"]
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"Queue rejection policy must be one of {allowed}")
        return v_lower

    @field_validator("retry_max_delay")
    @classmethod
    def validate_max_delay(cls, v: float, info) -> float:
        """Backoff ceiling must not be below the base delay."""
        base = info.data.get("retry_base_delay", 0.0)
        if v < base:
            raise ValueError("retry_max_delay must be >= retry_base_delay")
        return v

    def get_log_level(self) -> int:
        """Get logging level as integer."""
        return getattr(logging, self.log_level)

    def ensure_directories(self) -> None:
        """Create state directories if they don't exist."""
        for dir_path in [self.state_dir, self.work_orders_dir]:
            Path(dir_path).mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Pipeline core settings
    """
    return Settings()
