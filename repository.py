from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Dict, Iterator, List, Optional

from models import Reservation, ReservationStatus, Window, intervals_overlap


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StaleStateError(Exception):
    """The reservation is gone or no longer in the status the caller read."""

    def __init__(
        self,
        reservation_id: str,
        expected: ReservationStatus,
        actual: Optional[ReservationStatus],
    ) -> None:
        self.reservation_id = reservation_id
        self.expected = expected
        self.actual = actual
        found = actual.value if actual is not None else "missing"
        super().__init__(f"reservation {reservation_id}: expected {expected.value}, found {found}")


class InMemoryReservationRepository:
    def __init__(self, clock: Clock = utc_now) -> None:
        self._items: Dict[str, Reservation] = {}
        self._lock = Lock()
        self._resource_locks: Dict[str, Lock] = {}
        self._clock = clock

    @contextmanager
    def resource_lock(self, resource_id: str) -> Iterator[None]:
        """
        Serialize state changes for one resource.

        Anything that reads the approved timeline and then writes based on it
        must run inside this block. Not reentrant.
        """
        with self._lock:
            lock = self._resource_locks.setdefault(resource_id, Lock())
        with lock:
            yield

    def create(self, reservation: Reservation) -> str:
        _check_window(reservation.window)
        now = self._clock()
        with self._lock:
            if reservation.id in self._items:
                raise ValueError(f"reservation {reservation.id} already exists")
            self._items[reservation.id] = replace(reservation, created_at=now, updated_at=now)
        return reservation.id

    def get(self, reservation_id: str) -> Optional[Reservation]:
        with self._lock:
            return self._items.get(reservation_id)

    def conditional_transition(
        self,
        reservation_id: str,
        expected_status: ReservationStatus,
        mutation: Callable[[Reservation], Reservation],
    ) -> Reservation:
        """
        Apply ``mutation`` only if the stored status still equals ``expected_status``.

        Raises StaleStateError otherwise, leaving the record untouched.
        """
        with self._lock:
            current = self._items.get(reservation_id)
            if current is None or current.status != expected_status:
                raise StaleStateError(
                    reservation_id,
                    expected_status,
                    current.status if current is not None else None,
                )

            updated = mutation(current)
            if (updated.id, updated.resource_id, updated.owner_id) != (
                current.id,
                current.resource_id,
                current.owner_id,
            ):
                raise ValueError("id, resource_id and owner_id are immutable")
            if updated.reminder_sent < current.reminder_sent:
                raise ValueError("reminder_sent cannot be cleared")
            _check_window(updated.window)

            updated = replace(updated, created_at=current.created_at, updated_at=self._clock())
            self._items[reservation_id] = updated
            return updated

    def mark_reminder_sent(self, reservation_id: str) -> bool:
        """Flip reminder_sent false -> true. False if already set or the record is gone."""
        with self._lock:
            current = self._items.get(reservation_id)
            if current is None or current.reminder_sent:
                return False
            self._items[reservation_id] = replace(current, reminder_sent=True, updated_at=self._clock())
            return True

    def delete(self, reservation_id: str, expected_status: Optional[ReservationStatus] = None) -> bool:
        with self._lock:
            current = self._items.get(reservation_id)
            if current is None:
                return False
            if expected_status is not None and current.status != expected_status:
                raise StaleStateError(reservation_id, expected_status, current.status)
            del self._items[reservation_id]
            return True

    def list_blocking(
        self,
        resource_id: str,
        window: Window,
        status: ReservationStatus = ReservationStatus.APPROVED,
        exclude_id: Optional[str] = None,
    ) -> List[Reservation]:
        with self._lock:
            return [
                r
                for r in self._items.values()
                if r.resource_id == resource_id
                and r.status == status
                and r.id != exclude_id
                and intervals_overlap(window.start, window.end, r.start, r.end)
            ]

    def list_by_owner(self, owner_id: str) -> List[Reservation]:
        with self._lock:
            return [r for r in self._items.values() if r.owner_id == owner_id]

    def list_pending(self) -> List[Reservation]:
        return self.list_all(status=ReservationStatus.PENDING)

    def list_all(
        self,
        status: Optional[ReservationStatus] = None,
        resource_id: Optional[str] = None,
        department_id: Optional[str] = None,
        event_name: Optional[str] = None,
        overlapping: Optional[Window] = None,
    ) -> List[Reservation]:
        """
        Filtered scan. ``event_name`` is a case-insensitive substring match and
        ``overlapping`` keeps reservations whose half-open window meets it.
        """
        needle = event_name.casefold() if event_name else None
        with self._lock:
            return [
                r
                for r in self._items.values()
                if (status is None or r.status == status)
                and (resource_id is None or r.resource_id == resource_id)
                and (department_id is None or r.department_id == department_id)
                and (needle is None or needle in r.event_name.casefold())
                and (overlapping is None or r.window.overlaps(overlapping))
            ]

    def list_created_since(
        self,
        since: datetime,
        resource_id: Optional[str] = None,
        department_id: Optional[str] = None,
    ) -> List[Reservation]:
        with self._lock:
            return [
                r
                for r in self._items.values()
                if r.created_at is not None
                and r.created_at >= since
                and (resource_id is None or r.resource_id == resource_id)
                and (department_id is None or r.department_id == department_id)
            ]

    def list_current_or_starting_before(self, now: datetime, cutoff: datetime) -> List[Reservation]:
        """Approved reservations in progress at ``now`` or starting in (now, cutoff)."""
        with self._lock:
            return [
                r
                for r in self._items.values()
                if r.status == ReservationStatus.APPROVED
                and ((r.start <= now <= r.end) or (now < r.start < cutoff))
            ]

    def list_starting_between(
        self,
        start: datetime,
        end: datetime,
        status: ReservationStatus,
        resource_id: Optional[str] = None,
    ) -> List[Reservation]:
        """Reservations whose start falls in [start, end)."""
        with self._lock:
            return [
                r
                for r in self._items.values()
                if r.status == status
                and (resource_id is None or r.resource_id == resource_id)
                and start <= r.start < end
            ]

    def list_due_reminders(self, start: datetime, end: datetime) -> List[Reservation]:
        """Pending, not yet reminded, starting in [start, end]."""
        with self._lock:
            return [
                r
                for r in self._items.values()
                if r.status == ReservationStatus.PENDING
                and not r.reminder_sent
                and start <= r.start <= end
            ]

    def count_by_status(self) -> Dict[ReservationStatus, int]:
        counts = {s: 0 for s in ReservationStatus}
        with self._lock:
            for r in self._items.values():
                counts[r.status] += 1
        return counts

    def reset(self) -> None:
        """Clear all reservations. For testing only."""
        with self._lock:
            self._items.clear()
            self._resource_locks.clear()


def _check_window(window: Window) -> None:
    if not window.start < window.end:
        raise ValueError("window start must be before end")
