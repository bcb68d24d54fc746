"""Environment-driven configuration for the scheduling coordinator."""

from __future__ import annotations

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Operating limits
LEASE_DURATION_SECONDS = 360
DISPATCH_BATCH_LIMIT = 50
ERROR_THRESHOLD = 10


def _env(field_name: str, env_name: str) -> AliasChoices:
    return AliasChoices(field_name, env_name)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
    )

    scheduler_enabled: bool = Field(
        default=True, validation_alias=_env("scheduler_enabled", "SCHEDULER_ENABLED")
    )
    poll_interval_minutes: float = Field(
        default=5, gt=0,
        validation_alias=_env("poll_interval_minutes", "SCHEDULER_POLL_INTERVAL_MINUTES"),
    )
    lease_fail_open: bool = Field(
        default=True, validation_alias=_env("lease_fail_open", "SCHEDULER_LEASE_FAIL_OPEN")
    )
    stop_timeout_seconds: float = Field(
        default=30, ge=0,
        validation_alias=_env("stop_timeout_seconds", "SCHEDULER_STOP_TIMEOUT_SECONDS"),
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///scheduler.db",
        validation_alias=_env("database_url", "DATABASE_URL"),
    )
    dispatcher_backend: str = Field(   # sql | memory
        default="sql", validation_alias=_env("dispatcher_backend", "DISPATCHER_BACKEND")
    )
    queue_database_url: str | None = Field(
        default=None, validation_alias=_env("queue_database_url", "QUEUE_DATABASE_URL")
    )

    log_level: str = Field(default="INFO", validation_alias=_env("log_level", "LOG_LEVEL"))
    log_format: str = Field(   # json | text
        default="json", validation_alias=_env("log_format", "LOG_FORMAT")
    )

    lease_duration_seconds: int = LEASE_DURATION_SECONDS
    dispatch_batch_limit: int = DISPATCH_BATCH_LIMIT
    error_threshold: int = ERROR_THRESHOLD

    @model_validator(mode="after")
    def check_lease_outlives_poll(self):
        # A healthy holder must renew before its lease runs out
        if self.poll_interval_seconds >= self.lease_duration_seconds:
            raise ValueError(
                f"poll interval ({self.poll_interval_seconds:.0f}s) must be shorter "
                f"than the lease duration ({self.lease_duration_seconds}s)"
            )
        if self.dispatcher_backend not in {"sql", "memory"}:
            raise ValueError(f"Unknown dispatcher backend '{self.dispatcher_backend}'")
        return self

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_minutes * 60

    @property
    def effective_queue_url(self) -> str:
        return self.queue_database_url or self.database_url
