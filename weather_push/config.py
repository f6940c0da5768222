"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from WEATHER_PUSH_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="WEATHER_PUSH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    database_path: str = "weather_push.db"

    # Upstream services
    openweathermap_api_key: Optional[str] = None
    openweathermap_url: str = "https://api.openweathermap.org/data/2.5/weather"
    openweathermap_onecall_url: str = "https://api.openweathermap.org/data/3.0/onecall"
    daily_call_budget: int = Field(default=1000, ge=0)  # upstream calls per UTC day
    expo_push_url: str = "https://exp.host/--/api/v2/push/send"
    http_timeout_seconds: float = Field(default=15.0, gt=0)

    # Driver loop
    tick_seconds: float = Field(default=60.0, gt=0)
    job_refresh_seconds: float = Field(default=300.0, gt=0)  # job-set staleness window
    max_concurrent_executions: int = Field(default=4, ge=1)
    catch_up: Literal["latest", "all"] = "latest"
    max_catch_up: int = Field(default=10, ge=1)
    shutdown_grace_seconds: float = Field(default=30.0, ge=0)

    # Weather cache
    staleness_window_seconds: int = Field(default=1800, ge=0)
    serve_stale_on_error: bool = False
    history_retention_days: int = Field(default=30, ge=1)

    # Fetch retries
    fetch_max_attempts: int = Field(default=3, ge=1)
    fetch_backoff_seconds: float = Field(default=1.0, ge=0)
    fetch_backoff_max_seconds: float = Field(default=30.0, ge=0)

    # Notification fan-out
    delivery_max_attempts: int = Field(default=2, ge=1)
    delivery_backoff_seconds: float = Field(default=0.5, ge=0)
    delivery_timeout_seconds: float = Field(default=10.0, gt=0)
    fanout_parallelism: int = Field(default=8, ge=1)

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: str = "*"  # comma-separated
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
