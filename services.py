from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from conflicts import ConflictDetector
from models import (
    Reservation,
    ReservationStatus,
    TimePolicy,
    Window,
    civil_day_bounds,
    civil_month_bounds,
    end_of_civil_day,
    is_aware,
    start_of_civil_day,
    to_utc,
)
from notifications import AssetStore, EventKind, LifecycleEvent, Notifier
from policy import validate_window
from repository import Clock, InMemoryReservationRepository, StaleStateError, utc_now

logger = logging.getLogger(__name__)


class ReservationError(Exception):
    """Base class for domain/service errors."""

    code = "reservation_error"


class InvalidWindowError(ReservationError):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class MissingRejectionReasonError(ReservationError):
    code = "rejection_reason_required"

    def __init__(self) -> None:
        super().__init__("A rejection reason is required.")


class OverlapConflictError(ReservationError):
    code = "conflict"

    def __init__(self, conflicts: List[Reservation]) -> None:
        names = ", ".join(f"'{c.event_name}'" for c in conflicts)
        super().__init__(f"Overlap conflict: window overlaps approved reservation {names}.")
        self.conflicts = conflicts


class InvalidStateError(ReservationError):
    code = "invalid_state"


class TooLateError(ReservationError):
    code = "too_late"


class ReservationNotFoundError(ReservationError):
    code = "not_found"

    def __init__(self, reservation_id: str) -> None:
        super().__init__(f"Reservation {reservation_id} not found.")
        self.reservation_id = reservation_id


@dataclass(frozen=True)
class ReservationRequest:
    reservation: Reservation
    # Approved reservations overlapping the request at creation time. A warning, not a refusal.
    conflicts: List[Reservation] = field(default_factory=list)


@dataclass(frozen=True)
class Availability:
    resource_id: str
    window: Window
    conflicts: List[Reservation] = field(default_factory=list)

    @property
    def available(self) -> bool:
        return not self.conflicts


@dataclass(frozen=True)
class GroupStats:
    key: Optional[str]
    pending: int = 0
    approved: int = 0
    rejected: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.approved + self.rejected


TREND_DEFAULT_DAYS = 30
TREND_MAX_DAYS = 365
PUBLIC_EVENT_DAYS = 30

_GROUP_KEYS = {
    "resource": lambda r: r.resource_id,
    "department": lambda r: r.department_id,
}


class ReservationService:
    def __init__(
        self,
        repo: InMemoryReservationRepository,
        policy: TimePolicy,
        notifier: Optional[Notifier] = None,
        assets: Optional[AssetStore] = None,
        admin_email: Optional[str] = None,
        reject_conflicting_requests: bool = False,
        clock: Clock = utc_now,
    ) -> None:
        self._repo = repo
        self._policy = policy
        self._detector = ConflictDetector(repo)
        self._notifier = notifier
        self._assets = assets
        self._admin_email = admin_email
        self._reject_conflicting_requests = reject_conflicting_requests
        self._clock = clock

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def request_reservation(
        self,
        resource_id: str,
        owner_id: str,
        start: datetime,
        end: datetime,
        event_name: str,
        description: str = "",
        department_id: Optional[str] = None,
        attachments: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> ReservationRequest:
        now = now or self._clock()
        window = self._validated(Window(start=start, end=end), now)

        reservation = Reservation(
            id=f"rsv_{uuid4().hex}",
            resource_id=resource_id,
            owner_id=owner_id,
            window=window,
            event_name=event_name.strip(),
            description=description.strip(),
            department_id=department_id,
            attachments=tuple(attachments),
        )
        # Pending requests may overlap approved ones unless configured otherwise; approval re-checks.
        conflicts = self._detector.find_conflicts(resource_id, window)
        if conflicts and self._reject_conflicting_requests:
            raise OverlapConflictError(conflicts)
        self._repo.create(reservation)
        created = self._repo.get(reservation.id) or reservation

        logger.info(
            "Reservation %s requested by %s on %s (%d approved overlaps)",
            created.id,
            owner_id,
            resource_id,
            len(conflicts),
        )
        self._notify(owner_id, created, EventKind.REQUESTED, now)
        if self._admin_email:
            self._notify(self._admin_email, created, EventKind.REQUEST_RECEIVED, now)
        return ReservationRequest(reservation=created, conflicts=conflicts)

    def approve(self, reservation_id: str, approver_id: str, now: Optional[datetime] = None) -> Reservation:
        now = now or self._clock()
        current = self._get_or_raise(reservation_id)

        with self._repo.resource_lock(current.resource_id):
            current = self._get_or_raise(reservation_id)
            _require_status(current, ReservationStatus.PENDING, "approve")

            # Re-check under the resource lock, never reuse the request-time answer.
            conflicts = self._detector.find_conflicts(
                current.resource_id, current.window, exclude_id=current.id
            )
            if conflicts:
                raise OverlapConflictError(conflicts)

            updated = self._transition(
                current,
                lambda r: replace(r, status=ReservationStatus.APPROVED, rejection_reason=None),
            )

        logger.info("Reservation %s approved by %s", reservation_id, approver_id)
        self._notify(updated.owner_id, updated, EventKind.APPROVED, now)
        return updated

    def reject(
        self,
        reservation_id: str,
        approver_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Reservation:
        now = now or self._clock()
        reason = (reason or "").strip()
        if not reason:
            raise MissingRejectionReasonError()

        current = self._get_or_raise(reservation_id)
        with self._repo.resource_lock(current.resource_id):
            current = self._get_or_raise(reservation_id)
            _require_status(current, ReservationStatus.PENDING, "reject")
            updated = self._transition(
                current,
                lambda r: replace(r, status=ReservationStatus.REJECTED, rejection_reason=reason),
            )

        logger.info("Reservation %s rejected by %s", reservation_id, approver_id)
        self._notify(updated.owner_id, updated, EventKind.REJECTED, now)
        return updated

    def reschedule(
        self,
        reservation_id: str,
        owner_id: str,
        start: datetime,
        end: datetime,
        now: Optional[datetime] = None,
    ) -> Reservation:
        """
        Move an approved reservation to a new window and send it back for approval.

        The previous window is not kept on the record; it only travels with
        the emitted notifications.
        """
        now = now or self._clock()
        current = self._get_owned_or_raise(reservation_id, owner_id)
        _require_status(current, ReservationStatus.APPROVED, "reschedule")

        window = self._validated(Window(start=start, end=end), now)
        if window == current.window:
            raise InvalidWindowError("unchanged_window", "New window is the same as the current one.")

        with self._repo.resource_lock(current.resource_id):
            current = self._get_owned_or_raise(reservation_id, owner_id)
            _require_status(current, ReservationStatus.APPROVED, "reschedule")
            previous = current.window

            conflicts = self._detector.find_conflicts(current.resource_id, window, exclude_id=current.id)
            if conflicts:
                raise OverlapConflictError(conflicts)

            updated = self._transition(
                current,
                lambda r: replace(
                    r,
                    window=window,
                    status=ReservationStatus.PENDING,
                    rejection_reason=None,
                ),
            )

        logger.info(
            "Reservation %s rescheduled by %s from %s to %s; pending re-approval",
            reservation_id,
            owner_id,
            previous.start.isoformat(),
            window.start.isoformat(),
        )
        self._notify(owner_id, updated, EventKind.RESCHEDULED, now, previous_window=previous)
        if self._admin_email:
            self._notify(
                self._admin_email, updated, EventKind.RESCHEDULE_RECEIVED, now, previous_window=previous
            )
        return updated

    def withdraw(self, reservation_id: str, owner_id: str, now: Optional[datetime] = None) -> Reservation:
        """Remove a pending or approved reservation. Returns the removed record."""
        now = now or self._clock()
        current = self._get_owned_or_raise(reservation_id, owner_id)

        with self._repo.resource_lock(current.resource_id):
            current = self._get_owned_or_raise(reservation_id, owner_id)
            if current.status == ReservationStatus.REJECTED:
                raise InvalidStateError(f"Cannot withdraw a reservation with status '{current.status.value}'.")
            if current.status == ReservationStatus.APPROVED:
                cutoff = current.start - self._policy.min_lead_time
                if now >= cutoff:
                    hours = self._policy.min_lead_time.total_seconds() / 3600
                    raise TooLateError(
                        f"Cannot withdraw an approved reservation less than {hours:g} hours before it starts."
                    )
            try:
                deleted = self._repo.delete(reservation_id, expected_status=current.status)
            except StaleStateError as exc:
                raise InvalidStateError(str(exc)) from exc
            if not deleted:
                raise ReservationNotFoundError(reservation_id)

        logger.info("Reservation %s withdrawn by %s", reservation_id, owner_id)
        self._cleanup_assets(current)
        self._notify(owner_id, current, EventKind.WITHDRAWN, now)
        return current

    # -----------------------------
    # Read paths
    # -----------------------------
    def check_availability(
        self,
        resource_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> Availability:
        if not (is_aware(start) and is_aware(end)):
            raise InvalidWindowError("malformed", "Start and end must be timezone-aware timestamps.")
        if not start < end:
            raise InvalidWindowError("end_not_after_start", "End time must be after start time.")

        window = Window(start=to_utc(start), end=to_utc(end))
        conflicts = self._detector.find_conflicts(resource_id, window, exclude_id=exclude_id)
        return Availability(resource_id=resource_id, window=window, conflicts=conflicts)

    def get(self, reservation_id: str) -> Reservation:
        return self._get_or_raise(reservation_id)

    def list_for_owner(self, owner_id: str) -> List[Reservation]:
        items = self._repo.list_by_owner(owner_id)
        items.sort(key=lambda r: r.start, reverse=True)
        return items

    def list_reservations(
        self,
        status: Optional[ReservationStatus] = None,
        resource_id: Optional[str] = None,
        department_id: Optional[str] = None,
        event_name: Optional[str] = None,
        day: Optional[date] = None,
    ) -> List[Reservation]:
        """
        Admin listing, newest request first.

        ``day`` keeps reservations overlapping that local calendar day and
        ``event_name`` matches case-insensitively anywhere in the name.
        """
        overlapping = None
        if day is not None:
            first, following = civil_day_bounds(day, self._policy.tz)
            overlapping = Window(start=to_utc(first), end=to_utc(following))
        items = self._repo.list_all(
            status=status,
            resource_id=resource_id,
            department_id=department_id,
            event_name=event_name.strip() if event_name else None,
            overlapping=overlapping,
        )
        items.sort(key=lambda r: r.created_at, reverse=True)
        return items

    def recent_pending(self, limit: int = 5) -> List[Reservation]:
        items = self._repo.list_pending()
        items.sort(key=lambda r: r.created_at, reverse=True)
        return items[:limit]

    def upcoming(self, days: int = 7, now: Optional[datetime] = None) -> List[Reservation]:
        """Approved reservations starting from the start of today through the end of day ``now + days``."""
        now = now or self._clock()
        tz = self._policy.tz
        items = self._repo.list_starting_between(
            to_utc(start_of_civil_day(now, tz)),
            to_utc(end_of_civil_day(now.astimezone(tz) + timedelta(days=days), tz)),
            status=ReservationStatus.APPROVED,
        )
        items.sort(key=lambda r: r.start)
        return items

    def schedule(self, resource_id: str, year: int, month: int) -> List[Reservation]:
        """Approved reservations overlapping one civil month on a resource."""
        first, following = civil_month_bounds(year, month, self._policy.tz)
        month_window = Window(start=to_utc(first), end=to_utc(following))
        return self._detector.find_conflicts(resource_id, month_window)

    def stats(self) -> Dict[str, int]:
        counts = self._repo.count_by_status()
        result = {status.value: n for status, n in counts.items()}
        result["total"] = sum(counts.values())
        return result

    def grouped_stats(self, group_by: str) -> List[GroupStats]:
        """Status counts per resource or per department, ordered by key with unassigned last."""
        try:
            key_of = _GROUP_KEYS[group_by]
        except KeyError:
            raise ValueError(f"group_by must be one of {sorted(_GROUP_KEYS)}, got {group_by!r}") from None

        counts: Dict[Optional[str], Dict[ReservationStatus, int]] = {}
        for r in self._repo.list_all():
            bucket = counts.setdefault(key_of(r), {s: 0 for s in ReservationStatus})
            bucket[r.status] += 1

        return [
            GroupStats(
                key=key,
                pending=bucket[ReservationStatus.PENDING],
                approved=bucket[ReservationStatus.APPROVED],
                rejected=bucket[ReservationStatus.REJECTED],
            )
            for key, bucket in sorted(counts.items(), key=lambda kv: (kv[0] is None, kv[0] or ""))
        ]

    def trends(
        self,
        days: int = TREND_DEFAULT_DAYS,
        resource_id: Optional[str] = None,
        department_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[Tuple[date, int]]:
        """
        Requests created per local calendar day over the last ``days`` days,
        today included, oldest first. Days without requests count zero.
        """
        now = now or self._clock()
        days = min(days, TREND_MAX_DAYS) if days > 0 else TREND_DEFAULT_DAYS
        tz = self._policy.tz
        today = now.astimezone(tz).date()
        first = today - timedelta(days=days - 1)
        since, _ = civil_day_bounds(first, tz)

        per_day = {first + timedelta(days=i): 0 for i in range(days)}
        for r in self._repo.list_created_since(to_utc(since), resource_id=resource_id, department_id=department_id):
            created = r.created_at.astimezone(tz).date()
            if created in per_day:
                per_day[created] += 1
        return sorted(per_day.items())

    def public_events(self, days: int = PUBLIC_EVENT_DAYS, now: Optional[datetime] = None) -> List[Reservation]:
        """Approved reservations in progress now or starting within the next ``days`` local days."""
        now = now or self._clock()
        cutoff = now.astimezone(self._policy.tz) + timedelta(days=days)
        items = self._repo.list_current_or_starting_before(to_utc(now), to_utc(cutoff))
        items.sort(key=lambda r: r.start)
        return items

    # -----------------------------
    # Internals
    # -----------------------------
    def _validated(self, window: Window, now: datetime) -> Window:
        result = validate_window(window, now, self._policy)
        if not result.ok:
            raise InvalidWindowError(result.violation.value, result.message)
        return result.window

    def _get_or_raise(self, reservation_id: str) -> Reservation:
        reservation = self._repo.get(reservation_id)
        if reservation is None:
            raise ReservationNotFoundError(reservation_id)
        return reservation

    def _get_owned_or_raise(self, reservation_id: str, owner_id: str) -> Reservation:
        reservation = self._get_or_raise(reservation_id)
        # Other owners must not learn the reservation exists.
        if reservation.owner_id != owner_id:
            raise ReservationNotFoundError(reservation_id)
        return reservation

    def _transition(
        self,
        current: Reservation,
        mutation: Callable[[Reservation], Reservation],
    ) -> Reservation:
        try:
            return self._repo.conditional_transition(current.id, current.status, mutation)
        except StaleStateError as exc:
            raise InvalidStateError(str(exc)) from exc

    def _notify(
        self,
        recipient: str,
        reservation: Reservation,
        kind: EventKind,
        now: datetime,
        previous_window: Optional[Window] = None,
    ) -> None:
        if self._notifier is None:
            return
        event = LifecycleEvent(
            recipient=recipient,
            kind=kind,
            reservation=reservation,
            occurred_at=now,
            previous_window=previous_window,
        )
        try:
            self._notifier.notify(event)
        except Exception:
            # The transition is already committed; a lost notification does not undo it.
            logger.exception("Failed to send %s notification for reservation %s", kind.value, reservation.id)

    def _cleanup_assets(self, reservation: Reservation) -> None:
        if self._assets is None:
            return
        for url in reservation.attachments:
            try:
                self._assets.delete(url)
            except Exception:
                logger.exception("Failed to delete asset %s of reservation %s", url, reservation.id)


def _require_status(reservation: Reservation, expected: ReservationStatus, action: str) -> None:
    if reservation.status != expected:
        raise InvalidStateError(
            f"Cannot {action} a reservation with status '{reservation.status.value}'."
        )
