from __future__ import annotations

from datetime import date, datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, HTTPException, Path, Query, status

from models import (
    ApproveIn,
    AvailabilityOut,
    CreateReservationIn,
    CreateReservationOut,
    DailyCountOut,
    GroupStatsOut,
    RejectIn,
    RescheduleIn,
    ReservationOut,
    ReservationStatus,
    StatsOut,
    SweepOut,
    TrendsOut,
    parse_iso8601_tz,
    utc_iso_z,
)
from scheduler import ReminderScheduler
from services import (
    InvalidStateError,
    InvalidWindowError,
    MissingRejectionReasonError,
    OverlapConflictError,
    ReservationError,
    ReservationNotFoundError,
    ReservationService,
    TooLateError,
)


def _http_error(exc: ReservationError) -> HTTPException:
    if isinstance(exc, (InvalidWindowError, MissingRejectionReasonError)):
        code = status.HTTP_422_UNPROCESSABLE_CONTENT
    elif isinstance(exc, OverlapConflictError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, ReservationNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (InvalidStateError, TooLateError)):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail={"code": exc.code, "message": str(exc)})


def _parse_query_ts(value: str, name: str) -> datetime:
    try:
        return parse_iso8601_tz(value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail={"code": "malformed", "message": f"Validation error: {name} must be ISO-8601 with offset."},
        )


def create_router(service: ReservationService, scheduler: ReminderScheduler) -> APIRouter:
    router = APIRouter()

    @router.post("/reservations", response_model=CreateReservationOut, status_code=status.HTTP_201_CREATED)
    def request_reservation(payload: CreateReservationIn) -> CreateReservationOut:
        try:
            result = service.request_reservation(
                resource_id=payload.resource_id,
                owner_id=payload.owner_id,
                start=parse_iso8601_tz(payload.start),
                end=parse_iso8601_tz(payload.end),
                event_name=payload.event_name,
                description=payload.description,
                department_id=payload.department_id,
                attachments=payload.attachments,
            )
        except ReservationError as exc:
            raise _http_error(exc)
        return CreateReservationOut(
            reservation=ReservationOut.from_domain(result.reservation),
            conflicts=[ReservationOut.from_domain(c) for c in result.conflicts],
        )

    # Static paths before /reservations/{reservation_id}.
    @router.get("/reservations/pending/recent", response_model=List[ReservationOut])
    def recent_pending(limit: int = Query(5, ge=1, le=50)) -> List[ReservationOut]:
        return [ReservationOut.from_domain(r) for r in service.recent_pending(limit)]

    @router.get("/reservations/upcoming", response_model=List[ReservationOut])
    def upcoming(days: int = Query(7, ge=1, le=90)) -> List[ReservationOut]:
        return [ReservationOut.from_domain(r) for r in service.upcoming(days)]

    @router.get("/reservations/stats", response_model=StatsOut)
    def stats() -> StatsOut:
        return StatsOut(**service.stats())

    @router.get("/reservations/stats/grouped", response_model=List[GroupStatsOut])
    def grouped_stats(group_by: Literal["resource", "department"] = Query(...)) -> List[GroupStatsOut]:
        return [
            GroupStatsOut(
                key=g.key,
                total=g.total,
                pending=g.pending,
                approved=g.approved,
                rejected=g.rejected,
            )
            for g in service.grouped_stats(group_by)
        ]

    @router.get("/reservations/trends", response_model=TrendsOut)
    def trends(
        days: int = Query(30, ge=1, le=365),
        resource_id: Optional[str] = Query(None, min_length=1),
        department_id: Optional[str] = Query(None, min_length=1),
    ) -> TrendsOut:
        data = service.trends(days, resource_id=resource_id, department_id=department_id)
        return TrendsOut(
            days=days,
            resource_id=resource_id,
            department_id=department_id,
            data=[DailyCountOut(date=day.isoformat(), count=count) for day, count in data],
        )

    @router.get("/reservations", response_model=List[ReservationOut])
    def list_reservations(
        status_filter: Optional[ReservationStatus] = Query(None, alias="status"),
        resource_id: Optional[str] = Query(None, min_length=1),
        department_id: Optional[str] = Query(None, min_length=1),
        event_name: Optional[str] = Query(None, min_length=1, max_length=150),
        day: Optional[date] = Query(None, alias="date"),
    ) -> List[ReservationOut]:
        items = service.list_reservations(
            status=status_filter,
            resource_id=resource_id,
            department_id=department_id,
            event_name=event_name,
            day=day,
        )
        return [ReservationOut.from_domain(r) for r in items]

    @router.get("/reservations/{reservation_id}", response_model=ReservationOut)
    def get_reservation(reservation_id: str = Path(..., min_length=1)) -> ReservationOut:
        try:
            return ReservationOut.from_domain(service.get(reservation_id))
        except ReservationError as exc:
            raise _http_error(exc)

    @router.post("/reservations/{reservation_id}/approve", response_model=ReservationOut)
    def approve(payload: ApproveIn, reservation_id: str = Path(..., min_length=1)) -> ReservationOut:
        try:
            return ReservationOut.from_domain(service.approve(reservation_id, payload.approver_id))
        except ReservationError as exc:
            raise _http_error(exc)

    @router.post("/reservations/{reservation_id}/reject", response_model=ReservationOut)
    def reject(payload: RejectIn, reservation_id: str = Path(..., min_length=1)) -> ReservationOut:
        try:
            return ReservationOut.from_domain(service.reject(reservation_id, payload.approver_id, payload.reason))
        except ReservationError as exc:
            raise _http_error(exc)

    @router.post("/reservations/{reservation_id}/reschedule", response_model=ReservationOut)
    def reschedule(payload: RescheduleIn, reservation_id: str = Path(..., min_length=1)) -> ReservationOut:
        try:
            updated = service.reschedule(
                reservation_id,
                payload.owner_id,
                parse_iso8601_tz(payload.start),
                parse_iso8601_tz(payload.end),
            )
        except ReservationError as exc:
            raise _http_error(exc)
        return ReservationOut.from_domain(updated)

    @router.delete("/reservations/{reservation_id}", status_code=status.HTTP_204_NO_CONTENT)
    def withdraw(
        reservation_id: str = Path(..., min_length=1),
        owner_id: str = Query(..., min_length=1),
    ) -> None:
        try:
            service.withdraw(reservation_id, owner_id)
            return None
        except ReservationError as exc:
            raise _http_error(exc)

    @router.get("/owners/{owner_id}/reservations", response_model=List[ReservationOut])
    def list_for_owner(owner_id: str = Path(..., min_length=1)) -> List[ReservationOut]:
        return [ReservationOut.from_domain(r) for r in service.list_for_owner(owner_id)]

    @router.get("/resources/{resource_id}/availability", response_model=AvailabilityOut)
    def check_availability(
        resource_id: str = Path(..., min_length=1),
        start: str = Query(...),
        end: str = Query(...),
        exclude_id: Optional[str] = Query(None),
    ) -> AvailabilityOut:
        try:
            result = service.check_availability(
                resource_id,
                _parse_query_ts(start, "start"),
                _parse_query_ts(end, "end"),
                exclude_id=exclude_id,
            )
        except ReservationError as exc:
            raise _http_error(exc)
        return AvailabilityOut(
            resource_id=resource_id,
            start=utc_iso_z(result.window.start),
            end=utc_iso_z(result.window.end),
            available=result.available,
            conflicts=[ReservationOut.from_domain(c) for c in result.conflicts],
        )

    @router.get("/resources/{resource_id}/schedule", response_model=List[ReservationOut])
    def schedule(
        resource_id: str = Path(..., min_length=1),
        year: int = Query(..., ge=1970, le=2100),
        month: int = Query(..., ge=1, le=12),
    ) -> List[ReservationOut]:
        return [ReservationOut.from_domain(r) for r in service.schedule(resource_id, year, month)]

    @router.get("/events/public", response_model=List[ReservationOut])
    def public_events() -> List[ReservationOut]:
        return [ReservationOut.from_domain(r) for r in service.public_events()]

    @router.post("/reminders/sweep", response_model=SweepOut)
    def run_reminder_sweep() -> SweepOut:
        result = scheduler.sweep()
        return SweepOut(
            processed=result.processed,
            notified=result.notified,
            failed=result.failed,
            skipped=result.skipped,
        )

    return router
