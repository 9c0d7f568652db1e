"""Engine configuration using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, RedisDsn
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables (prefix `MIRRORSYNC_`)."""

    model_config = SettingsConfigDict(
        env_prefix="MIRRORSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    # Storage
    redis_url: RedisDsn = Field(default="redis://localhost:6379/0")
    key_namespace: str | None = Field(default=None)

    # Webhooks
    webhook_base_url: str = Field(default="http://localhost:8000")
    channel_ttl_hours: int = Field(default=168)
    renewal_buffer_fraction: float = Field(default=0.1, ge=0.0, lt=1.0)
    renewal_min_buffer_hours: float = Field(default=24.0)
    reactive_renewal_horizon_hours: float = Field(default=24.0)
    renewal_retry_minutes: float = Field(default=15.0, gt=0)

    # Sync windows
    full_sync_lookback_years: int = Field(default=2, ge=0)
    incremental_lookback_days: int = Field(default=7, ge=1)

    # Scheduler retry policy
    max_task_attempts: int = Field(default=5, ge=1)
    task_retry_delays_seconds: list[int] = Field(default=[30, 60, 300, 900, 3600])


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
