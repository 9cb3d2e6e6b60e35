from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from models import Reservation, Window, utc_iso_z

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    REQUESTED = "requested"
    REQUEST_RECEIVED = "request_received"  # approver copy of REQUESTED
    APPROVED = "approved"
    REJECTED = "rejected"
    RESCHEDULED = "rescheduled"
    RESCHEDULE_RECEIVED = "reschedule_received"  # approver copy of RESCHEDULED
    WITHDRAWN = "withdrawn"
    PENDING_REMINDER = "pending_reminder"


@dataclass(frozen=True)
class LifecycleEvent:
    """One notification: who gets it, what happened, and the reservation as it was."""

    recipient: str
    kind: EventKind
    reservation: Reservation
    occurred_at: datetime
    previous_window: Optional[Window] = None

    def to_dict(self) -> Dict[str, Any]:
        r = self.reservation
        payload: Dict[str, Any] = {
            "recipient": self.recipient,
            "kind": self.kind.value,
            "occurred_at": utc_iso_z(self.occurred_at),
            "reservation": {
                "id": r.id,
                "resource_id": r.resource_id,
                "owner_id": r.owner_id,
                "event_name": r.event_name,
                "department_id": r.department_id,
                "status": r.status.value,
                "start": utc_iso_z(r.start),
                "end": utc_iso_z(r.end),
                "rejection_reason": r.rejection_reason,
            },
        }
        if self.previous_window is not None:
            payload["previous_window"] = {
                "start": utc_iso_z(self.previous_window.start),
                "end": utc_iso_z(self.previous_window.end),
            }
        return payload


class Notifier(Protocol):
    def notify(self, event: LifecycleEvent) -> None: ...


class AssetStore(Protocol):
    def delete(self, url: str) -> None: ...


class LoggingNotifier:
    """Default sink. Rendering and delivering email live outside this service."""

    def notify(self, event: LifecycleEvent) -> None:
        logger.info(
            "Notification %s -> %s for reservation %s",
            event.kind.value,
            event.recipient,
            event.reservation.id,
        )


class LoggingAssetStore:
    def delete(self, url: str) -> None:
        logger.info("Asset cleanup requested for %s", url)
