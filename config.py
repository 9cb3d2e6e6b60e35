from __future__ import annotations

from datetime import timedelta
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings

from models import TimePolicy


class Settings(BaseSettings):
    """Application settings sourced from environment variables."""

    # Reservation rules
    TIMEZONE: str = "Asia/Kolkata"
    OPENING_HOUR: int = Field(default=9, ge=0, le=23)
    MIN_LEAD_TIME_HOURS: float = Field(default=2, ge=0)
    MAX_ADVANCE_DAYS: int = Field(default=90, ge=1)
    # Refuse new requests that overlap an approved reservation instead of warning
    REJECT_CONFLICTING_REQUESTS: bool = False

    # Approver inbox; pending reminders are skipped when unset
    ADMIN_EMAIL: Optional[str] = None

    # Pending-reservation reminder sweep
    REMINDER_ENABLED: bool = True
    REMINDER_INTERVAL_SECONDS: int = Field(default=3600, ge=1)
    REMINDER_DAYS_BEFORE: int = Field(default=2, ge=0)
    REMINDER_MAX_WORKERS: int = Field(default=8, ge=1)

    LOG_LEVEL: str = "INFO"
    API_PREFIX: str = ""

    model_config = ConfigDict(env_file=".env", extra="ignore")

    @field_validator("TIMEZONE")
    @classmethod
    def must_be_known_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone: {v}") from exc
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def upper_log_level(cls, v: str) -> str:
        return v.upper()

    def time_policy(self) -> TimePolicy:
        return TimePolicy(
            opening_hour=self.OPENING_HOUR,
            min_lead_time=timedelta(hours=self.MIN_LEAD_TIME_HOURS),
            max_advance=timedelta(days=self.MAX_ADVANCE_DAYS),
            timezone=self.TIMEZONE,
        )


settings = Settings()
