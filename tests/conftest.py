from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import List, Optional
from uuid import uuid4
from zoneinfo import ZoneInfo

import pytest

from models import Reservation, ReservationStatus, TimePolicy, Window
from notifications import LifecycleEvent
from repository import InMemoryReservationRepository
from services import ReservationService

IST = ZoneInfo("Asia/Kolkata")
BERLIN = ZoneInfo("Europe/Berlin")

# 2024-05-20 10:00 in Asia/Kolkata
NOW = datetime(2024, 5, 20, 4, 30, tzinfo=timezone.utc)

ADMIN = "admin@example.com"


def ist(year: int, month: int, day: int, hour: int, minute: int = 0, second: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, second, tzinfo=IST)


def unique_resource_id() -> str:
    """Generate a unique resource ID for test isolation."""
    return f"aud_{uuid4().hex[:8]}"


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: List[LifecycleEvent] = []
        self._lock = Lock()

    def notify(self, event: LifecycleEvent) -> None:
        with self._lock:
            self.events.append(event)

    def kinds(self) -> List[str]:
        return [e.kind.value for e in self.events]


class RecordingAssetStore:
    def __init__(self, fail: bool = False) -> None:
        self.deleted: List[str] = []
        self.fail = fail

    def delete(self, url: str) -> None:
        self.deleted.append(url)
        if self.fail:
            raise RuntimeError("blob storage unavailable")


def make_reservation(
    repo: InMemoryReservationRepository,
    start: datetime,
    end: datetime,
    resource_id: str = "aud_main",
    status: ReservationStatus = ReservationStatus.PENDING,
    reminder_sent: bool = False,
    owner_id: str = "owner-1",
    department_id: Optional[str] = None,
    event_name: str = "Seminar",
) -> Reservation:
    reservation = Reservation(
        id=f"rsv_{uuid4().hex}",
        resource_id=resource_id,
        owner_id=owner_id,
        window=Window(start=start.astimezone(timezone.utc), end=end.astimezone(timezone.utc)),
        event_name=event_name,
        department_id=department_id,
        status=status,
        reminder_sent=reminder_sent,
    )
    repo.create(reservation)
    return repo.get(reservation.id)


@pytest.fixture
def policy() -> TimePolicy:
    return TimePolicy(
        opening_hour=9,
        min_lead_time=timedelta(hours=2),
        max_advance=timedelta(days=90),
        timezone="Asia/Kolkata",
    )


@pytest.fixture
def repo() -> InMemoryReservationRepository:
    return InMemoryReservationRepository(clock=lambda: NOW)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def assets() -> RecordingAssetStore:
    return RecordingAssetStore()


@pytest.fixture
def service(repo, policy, notifier, assets) -> ReservationService:
    return ReservationService(
        repo,
        policy,
        notifier=notifier,
        assets=assets,
        admin_email=ADMIN,
        clock=lambda: NOW,
    )
