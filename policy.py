from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from models import TimePolicy, Window, end_of_civil_day, is_aware


class PolicyViolation(str, Enum):
    MALFORMED = "malformed"
    END_NOT_AFTER_START = "end_not_after_start"
    BEFORE_OPENING_HOUR = "before_opening_hour"
    INSUFFICIENT_LEAD_TIME = "insufficient_lead_time"
    BEYOND_MAX_ADVANCE = "beyond_max_advance"


@dataclass(frozen=True)
class PolicyResult:
    window: Optional[Window] = None
    violation: Optional[PolicyViolation] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.violation is None


def _fail(violation: PolicyViolation, message: str) -> PolicyResult:
    return PolicyResult(violation=violation, message=message)


def validate_window(window: Window, now: datetime, policy: TimePolicy) -> PolicyResult:
    """
    Check a proposed window against the reservation rules.

    Rules are evaluated in a fixed order and the first failure wins. Hour of
    day and the advance horizon are computed on the civil calendar of
    ``policy.timezone``. On success the window comes back normalized to UTC.
    """
    if not (is_aware(window.start) and is_aware(window.end)):
        return _fail(PolicyViolation.MALFORMED, "Start and end must be timezone-aware timestamps.")
    if not is_aware(now):
        raise ValueError("now must be timezone-aware")

    if not window.start < window.end:
        return _fail(PolicyViolation.END_NOT_AFTER_START, "End time must be after start time.")

    tz = policy.tz
    if window.start.astimezone(tz).hour < policy.opening_hour:
        return _fail(
            PolicyViolation.BEFORE_OPENING_HOUR,
            f"Reservation cannot start before {policy.opening_hour:02d}:00 {policy.timezone}.",
        )

    if window.start < now + policy.min_lead_time:
        hours = policy.min_lead_time.total_seconds() / 3600
        return _fail(
            PolicyViolation.INSUFFICIENT_LEAD_TIME,
            f"Reservation must be made at least {hours:g} hours in advance.",
        )

    horizon = end_of_civil_day(now.astimezone(tz) + policy.max_advance, tz)
    if window.start > horizon:
        return _fail(
            PolicyViolation.BEYOND_MAX_ADVANCE,
            f"Reservation cannot start after {horizon.date().isoformat()} ({policy.timezone}).",
        )

    return PolicyResult(window=window.normalized())
