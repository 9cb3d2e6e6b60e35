from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from threading import Lock
from typing import Optional
from zoneinfo import ZoneInfo

from models import Reservation, ReservationStatus, Window, end_of_civil_day
from notifications import EventKind, LifecycleEvent, Notifier
from repository import Clock, InMemoryReservationRepository, utc_now

logger = logging.getLogger(__name__)


class ReminderOutcome(str, Enum):
    NOTIFIED = "notified"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class SweepResult:
    processed: int = 0
    notified: int = 0
    failed: int = 0
    skipped: int = 0


class ReminderScheduler:
    """
    Periodically nudges the approver about pending reservations that start soon.

    A reservation is reminded at most once. ``reminder_sent`` is set even when
    the notification could not be dispatched: a missed reminder is preferred
    over a duplicate one. Each due reservation is handled on its own worker so
    one failure never holds up the rest of the sweep.
    """

    def __init__(
        self,
        repo: InMemoryReservationRepository,
        notifier: Notifier,
        admin_email: Optional[str],
        timezone: str,
        horizon_days: int = 2,
        interval_seconds: float = 3600,
        max_workers: int = 8,
        clock: Clock = utc_now,
    ) -> None:
        self._repo = repo
        self._notifier = notifier
        self._admin_email = admin_email
        self._tz = ZoneInfo(timezone)
        self._horizon_days = horizon_days
        self._interval_seconds = interval_seconds
        self._max_workers = max_workers
        self._clock = clock
        self._sweep_lock = Lock()
        self._task: Optional[asyncio.Task] = None

    def reminder_window(self, now: datetime, horizon_days: Optional[int] = None) -> Window:
        days = self._horizon_days if horizon_days is None else horizon_days
        # Aware arithmetic in a ZoneInfo zone is wall-clock, so DST shifts keep the calendar day.
        local = now.astimezone(self._tz)
        return Window(start=now, end=end_of_civil_day(local + timedelta(days=days), self._tz))

    def sweep(self, now: Optional[datetime] = None, horizon_days: Optional[int] = None) -> SweepResult:
        if not self._admin_email:
            logger.warning("No ADMIN_EMAIL configured; skipping pending reservation reminders")
            return SweepResult()

        # Overlapping runs would race on the same rows; the later one just yields.
        if not self._sweep_lock.acquire(blocking=False):
            logger.warning("Reminder sweep already running; skipping this run")
            return SweepResult()

        try:
            now = now or self._clock()
            window = self.reminder_window(now, horizon_days)
            due = self._repo.list_due_reminders(window.start, window.end)
            logger.info(
                "Reminder sweep at %s: %d pending reservations start before %s",
                now.isoformat(),
                len(due),
                window.end.isoformat(),
            )
            if not due:
                return SweepResult()

            counts = {outcome: 0 for outcome in ReminderOutcome}
            with ThreadPoolExecutor(
                max_workers=min(self._max_workers, len(due)),
                thread_name_prefix="reminder",
            ) as pool:
                futures = {pool.submit(self._remind, r, now): r.id for r in due}
                for future in as_completed(futures):
                    try:
                        outcome = future.result()
                    except Exception:
                        logger.exception("Unexpected error reminding reservation %s", futures[future])
                        outcome = ReminderOutcome.FAILED
                    counts[outcome] += 1
        finally:
            self._sweep_lock.release()

        result = SweepResult(
            processed=len(due),
            notified=counts[ReminderOutcome.NOTIFIED],
            failed=counts[ReminderOutcome.FAILED],
            skipped=counts[ReminderOutcome.SKIPPED],
        )
        logger.info("Reminder sweep finished: %s", result)
        return result

    def _remind(self, reservation: Reservation, now: datetime) -> ReminderOutcome:
        current = self._repo.get(reservation.id)
        if current is None or current.status != ReservationStatus.PENDING or current.reminder_sent:
            logger.info("Reservation %s no longer needs a reminder", reservation.id)
            return ReminderOutcome.SKIPPED

        delivered = True
        try:
            self._notifier.notify(
                LifecycleEvent(
                    recipient=self._admin_email,
                    kind=EventKind.PENDING_REMINDER,
                    reservation=current,
                    occurred_at=now,
                )
            )
        except Exception:
            delivered = False
            logger.exception("Reminder dispatch failed for reservation %s; marking it reminded anyway", current.id)

        try:
            marked = self._repo.mark_reminder_sent(current.id)
        except Exception:
            if delivered:
                logger.critical(
                    "Reminder sent for reservation %s but reminder_sent could not be stored; "
                    "it may be reminded again",
                    current.id,
                    exc_info=True,
                )
            else:
                logger.error(
                    "Reminder for reservation %s neither sent nor marked",
                    current.id,
                    exc_info=True,
                )
            return ReminderOutcome.FAILED

        if not marked:
            # Another sweep flipped the flag, or the record went away, after our re-read.
            logger.error(
                "Reservation %s was already marked reminded or removed; reminder %s",
                current.id,
                "sent twice" if delivered else "not sent",
            )
            return ReminderOutcome.SKIPPED
        return ReminderOutcome.NOTIFIED if delivered else ReminderOutcome.FAILED

    # -----------------------------
    # Periodic task
    # -----------------------------
    async def run_forever(self) -> None:
        logger.info("Starting reminder scheduler, every %ss", self._interval_seconds)
        while True:
            try:
                await asyncio.to_thread(self.sweep)
            except Exception:
                logger.exception("Error in reminder scheduler loop")
            await asyncio.sleep(self._interval_seconds)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(), name="reminder-scheduler")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reminder scheduler stopped")
