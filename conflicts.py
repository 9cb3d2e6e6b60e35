from __future__ import annotations

import logging
from typing import List, Optional

from models import Reservation, ReservationStatus, Window
from repository import InMemoryReservationRepository

logger = logging.getLogger(__name__)


class ConflictDetector:
    """
    Overlap checks against the blocking reservations of one resource.

    Only ``status`` reservations take part (approved by default), so pending
    requests never block each other. Windows are half-open: touching windows
    do not conflict. ``exclude_id`` lets a reservation be compared against
    every other one on its resource.

    This is a read. Callers that act on the answer must hold the resource
    lock from the repository across the check and the write.
    """

    def __init__(self, repo: InMemoryReservationRepository) -> None:
        self._repo = repo

    def find_conflicts(
        self,
        resource_id: str,
        window: Window,
        status: ReservationStatus = ReservationStatus.APPROVED,
        exclude_id: Optional[str] = None,
    ) -> List[Reservation]:
        conflicts = self._repo.list_blocking(resource_id, window, status=status, exclude_id=exclude_id)
        conflicts.sort(key=lambda r: r.start)

        if conflicts:
            logger.debug(
                "Found %d %s conflicts on %s between %s and %s",
                len(conflicts),
                status.value,
                resource_id,
                window.start.isoformat(),
                window.end.isoformat(),
            )
        return conflicts

    def has_conflict(
        self,
        resource_id: str,
        window: Window,
        status: ReservationStatus = ReservationStatus.APPROVED,
        exclude_id: Optional[str] = None,
    ) -> bool:
        return bool(self.find_conflicts(resource_id, window, status=status, exclude_id=exclude_id))
