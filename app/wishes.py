from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from roster import Assignment, PendingRequest
from storage import ShiftStore

logger = logging.getLogger(__name__)

SERVICE_WISH = "service"
APPROVED_COMMENT = "Approved automatically when the assignment was made."
REVERTED_COMMENT = "Reset to pending after the assignment was removed."


class WishBook:
    """Keeps the wish requests of the window in step with assignment changes."""

    def __init__(self, backend: ShiftStore, requests: Optional[Iterable[PendingRequest]] = None) -> None:
        self.backend = backend
        self._requests: Dict[int, PendingRequest] = {}
        self.load(requests or [])

    def load(self, requests: Iterable[PendingRequest]) -> None:
        self._requests = {request.id: request for request in requests}

    def all(self) -> List[PendingRequest]:
        return sorted(self._requests.values(), key=lambda r: (r.date, r.id))

    def get(self, request_id: int) -> Optional[PendingRequest]:
        return self._requests.get(request_id)

    def _match(self, record: Assignment, status: str) -> Optional[PendingRequest]:
        for request in self.all():
            if (
                request.type == SERVICE_WISH
                and request.status == status
                and request.person_id == record.person_id
                and request.date == record.date
                and (not request.position or request.position == record.position)
            ):
                return request
        return None

    async def set_status(self, request_id: int, status: str, comment: Optional[str] = None) -> PendingRequest:
        updated = await self.backend.set_request_status(request_id, status, comment)
        self._requests[updated.id] = updated
        return updated

    async def on_created(self, record: Assignment) -> Optional[PendingRequest]:
        request = self._match(record, "pending")
        if request is None:
            return None
        logger.info("approving wish %s for person %s on %s", request.id, record.person_id, record.date)
        return await self.set_status(request.id, "approved", APPROVED_COMMENT)

    async def on_deleted(self, record: Assignment) -> Optional[PendingRequest]:
        request = self._match(record, "approved")
        if request is None:
            return None
        logger.info("reverting wish %s to pending", request.id)
        return await self.set_status(request.id, "pending", REVERTED_COMMENT)
