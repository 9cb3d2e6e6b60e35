from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api import create_router
from config import settings
from notifications import LoggingAssetStore, LoggingNotifier
from repository import InMemoryReservationRepository
from scheduler import ReminderScheduler
from services import ReservationService

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

# Wire up dependencies (in-memory store of record)
_repo = InMemoryReservationRepository()
_notifier = LoggingNotifier()
_service = ReservationService(
    _repo,
    settings.time_policy(),
    notifier=_notifier,
    assets=LoggingAssetStore(),
    admin_email=settings.ADMIN_EMAIL,
    reject_conflicting_requests=settings.REJECT_CONFLICTING_REQUESTS,
)
_scheduler = ReminderScheduler(
    _repo,
    _notifier,
    admin_email=settings.ADMIN_EMAIL,
    timezone=settings.TIMEZONE,
    horizon_days=settings.REMINDER_DAYS_BEFORE,
    interval_seconds=settings.REMINDER_INTERVAL_SECONDS,
    max_workers=settings.REMINDER_MAX_WORKERS,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.REMINDER_ENABLED:
        _scheduler.start()
    try:
        yield
    finally:
        await _scheduler.stop()


app = FastAPI(title="Auditorium Reservation API", version="1.0.0", lifespan=lifespan)
app.include_router(create_router(_service, _scheduler), prefix=settings.API_PREFIX)
