from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field, field_validator


# -----------------------------
# Shared time helpers
# -----------------------------
def parse_iso8601_tz(ts: str) -> datetime:
    """
    Parse ISO-8601 timestamp with timezone into an aware datetime.
    Accepts 'Z' suffix by converting it to '+00:00'.
    """
    if not isinstance(ts, str) or not ts.strip():
        raise ValueError("timestamp must be a non-empty string")

    s = ts.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)  # expects offset like +05:30 or +00:00
    if not is_aware(dt):
        raise ValueError("timestamp must include a timezone offset")
    return dt


def is_aware(dt: object) -> bool:
    return isinstance(dt, datetime) and dt.tzinfo is not None and dt.utcoffset() is not None


def to_utc(dt: datetime) -> datetime:
    # dt is aware
    return dt.astimezone(timezone.utc)


def intervals_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """
    Half-open interval overlap: [start, end)
    Overlap iff a_start < b_end AND b_start < a_end.
    Back-to-back is allowed (end == other.start is NOT overlap).
    """
    return a_start < b_end and b_start < a_end


def utc_iso_z(dt: datetime) -> str:
    return to_utc(dt).isoformat().replace("+00:00", "Z")


def start_of_civil_day(dt: datetime, tz: ZoneInfo) -> datetime:
    local = dt.astimezone(tz)
    return datetime.combine(local.date(), time.min, tzinfo=tz)


def end_of_civil_day(dt: datetime, tz: ZoneInfo) -> datetime:
    """Last representable instant of the local calendar day containing ``dt``."""
    local = dt.astimezone(tz)
    return datetime.combine(local.date(), time.max, tzinfo=tz)


def civil_day_bounds(day: date, tz: ZoneInfo) -> Tuple[datetime, datetime]:
    """Half-open [midnight of ``day``, midnight of the following day) in ``tz``."""
    first = datetime.combine(day, time.min, tzinfo=tz)
    following = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return first, following


def civil_month_bounds(year: int, month: int, tz: ZoneInfo) -> Tuple[datetime, datetime]:
    """Half-open [first instant of month, first instant of next month) in ``tz``."""
    first = datetime(year, month, 1, tzinfo=tz)
    if month == 12:
        following = datetime(year + 1, 1, 1, tzinfo=tz)
    else:
        following = datetime(year, month + 1, 1, tzinfo=tz)
    return first, following


# -----------------------------
# Domain model
# -----------------------------
class ReservationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Window:
    start: datetime
    end: datetime

    def overlaps(self, other: Window) -> bool:
        return intervals_overlap(self.start, self.end, other.start, other.end)

    def normalized(self) -> Window:
        return Window(start=to_utc(self.start), end=to_utc(self.end))


@dataclass(frozen=True)
class TimePolicy:
    opening_hour: int
    min_lead_time: timedelta
    max_advance: timedelta
    timezone: str

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass(frozen=True)
class Reservation:
    id: str
    resource_id: str
    owner_id: str
    window: Window  # UTC
    event_name: str
    description: str = ""
    department_id: Optional[str] = None
    attachments: Tuple[str, ...] = ()
    status: ReservationStatus = ReservationStatus.PENDING
    rejection_reason: Optional[str] = None
    reminder_sent: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def start(self) -> datetime:
        return self.window.start

    @property
    def end(self) -> datetime:
        return self.window.end


# -----------------------------
# API models (transport layer)
# -----------------------------
class _WindowIn(BaseModel):
    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def must_be_iso8601_with_tz(cls, v: str) -> str:
        # Validate format + timezone presence early; actual comparison happens in service.
        parse_iso8601_tz(v)
        return v


class CreateReservationIn(_WindowIn):
    resource_id: str = Field(..., min_length=1)
    owner_id: str = Field(..., min_length=1)
    event_name: str = Field(..., min_length=1, max_length=150)
    description: str = Field(default="", max_length=1000)
    department_id: Optional[str] = None
    attachments: List[str] = Field(default_factory=list)

    @field_validator("event_name")
    @classmethod
    def event_name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("event_name must not be blank")
        return v.strip()


class RescheduleIn(_WindowIn):
    owner_id: str = Field(..., min_length=1)


class ApproveIn(BaseModel):
    approver_id: str = Field(..., min_length=1)


class RejectIn(BaseModel):
    approver_id: str = Field(..., min_length=1)
    reason: str = Field(..., max_length=1000)


class ReservationOut(BaseModel):
    id: str
    resource_id: str
    owner_id: str
    event_name: str
    description: str
    department_id: Optional[str] = None
    attachments: List[str] = Field(default_factory=list)
    start: str  # ISO-8601, UTC with Z
    end: str
    status: ReservationStatus
    rejection_reason: Optional[str] = None
    reminder_sent: bool
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_domain(cls, r: Reservation) -> ReservationOut:
        return cls(
            id=r.id,
            resource_id=r.resource_id,
            owner_id=r.owner_id,
            event_name=r.event_name,
            description=r.description,
            department_id=r.department_id,
            attachments=list(r.attachments),
            start=utc_iso_z(r.start),
            end=utc_iso_z(r.end),
            status=r.status,
            rejection_reason=r.rejection_reason,
            reminder_sent=r.reminder_sent,
            created_at=utc_iso_z(r.created_at) if r.created_at else None,
            updated_at=utc_iso_z(r.updated_at) if r.updated_at else None,
        )


class CreateReservationOut(BaseModel):
    reservation: ReservationOut
    # Approved reservations already overlapping the requested window. Informational only.
    conflicts: List[ReservationOut] = Field(default_factory=list)


class AvailabilityOut(BaseModel):
    resource_id: str
    start: str
    end: str
    available: bool
    conflicts: List[ReservationOut] = Field(default_factory=list)


class StatsOut(BaseModel):
    total: int = 0
    pending: int = 0
    approved: int = 0
    rejected: int = 0


class GroupStatsOut(StatsOut):
    # resource_id or department_id; None collects reservations without a department.
    key: Optional[str] = None


class DailyCountOut(BaseModel):
    date: str  # YYYY-MM-DD, local calendar
    count: int


class TrendsOut(BaseModel):
    days: int
    resource_id: Optional[str] = None
    department_id: Optional[str] = None
    data: List[DailyCountOut] = Field(default_factory=list)


class SweepOut(BaseModel):
    processed: int
    notified: int
    failed: int
    skipped: int
