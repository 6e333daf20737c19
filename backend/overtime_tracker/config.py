from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")
    """Application runtime configuration."""

    app_name: str = "Overtime Tracker"
    environment: str = "development"
    host: str = os.getenv("OT_HOST", "127.0.0.1")
    port: int = int(os.getenv("OT_PORT", "8080"))

    sqlite_path: Path = Path(os.getenv("OT_SQLITE_PATH", "./data/overtime.db"))

    log_level: str = os.getenv("OT_LOG_LEVEL", "INFO")
    log_file: Optional[str] = os.getenv("OT_LOG_FILE")

    clockify_api_url: str = os.getenv("OT_CLOCKIFY_API_URL", "https://api.clockify.me/api/v1")
    clockify_reports_url: str = os.getenv("OT_CLOCKIFY_REPORTS_URL", "https://reports.api.clockify.me/v1")
    rate_limit_ms: int = int(os.getenv("OT_RATE_LIMIT_MS", "350"))
    request_timeout: float = float(os.getenv("OT_REQUEST_TIMEOUT", "30"))
    request_retries: int = int(os.getenv("OT_REQUEST_RETRIES", "2"))
    retry_backoff_factor: float = float(os.getenv("OT_RETRY_BACKOFF", "0.5"))
    retry_backoff_jitter: float = float(os.getenv("OT_RETRY_JITTER", "0.25"))

    timezone: str = os.getenv("TZ", "Europe/Berlin")
    default_regular_hours_per_week: float = float(os.getenv("OT_REGULAR_HOURS", "40"))
    default_working_days_per_week: int = int(os.getenv("OT_WORKING_DAYS", "5"))

    @field_validator("rate_limit_ms", "request_retries")
    @classmethod
    def _not_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @property
    def rate_limit_seconds(self) -> float:
        return self.rate_limit_ms / 1000.0


settings = Settings()

# Ensure essential directories exist
settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
