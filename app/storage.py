"""Persistence collaborators for the roster engine.

The engine only needs four CRUD-shaped calls for shift entries plus the
wish-status and notification side channels. :class:`SqlShiftStore` backs them
with the SQLAlchemy helpers in :mod:`database` and writes an audit row for
every accepted change. The blocking session work runs in a worker thread so
the event loop keeps serving requests while storage is busy.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from database import (
    create_notification,
    create_shift_entry,
    delete_shift_entry,
    list_shift_entries,
    list_wish_requests,
    record_audit_log,
    set_wish_status,
    update_shift_entry,
)
from roster import Assignment, PendingRequest

logger = logging.getLogger(__name__)


class ShiftStore:
    """Interface the mutation orchestrator persists through."""

    async def create(self, payload: Dict[str, Any]) -> Assignment:
        raise NotImplementedError

    async def update(self, entry_id: int, changes: Dict[str, Any]) -> Assignment:
        raise NotImplementedError

    async def delete(self, entry_id: int) -> bool:
        raise NotImplementedError

    async def list_range(self, start: datetime.date, end: datetime.date) -> List[Assignment]:
        raise NotImplementedError

    async def list_requests(self, start: datetime.date, end: datetime.date) -> List[PendingRequest]:
        return []

    async def set_request_status(self, request_id: int, status: str, comment: Optional[str] = None) -> PendingRequest:
        raise NotImplementedError

    async def notify(self, person_id: int, date_value: datetime.date, kind: str, message: str) -> None:
        return None


class SqlShiftStore(ShiftStore):
    def __init__(self, session_factory, *, actor: str = "system") -> None:
        self.session_factory = session_factory
        self.actor = actor or "system"
        # One session at a time; notifications may overlap a gesture's writes.
        self._lock = threading.Lock()

    async def _offload(self, func: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(self._serialized, func, *args)

    def _serialized(self, func: Callable[..., Any], *args: Any) -> Any:
        with self._lock:
            return func(*args)

    async def create(self, payload: Dict[str, Any]) -> Assignment:
        return await self._offload(self._create, payload)

    async def update(self, entry_id: int, changes: Dict[str, Any]) -> Assignment:
        return await self._offload(self._update, entry_id, changes)

    async def delete(self, entry_id: int) -> bool:
        removed = await self._offload(self._delete, entry_id)
        if not removed:
            logger.debug("shift entry %s already gone", entry_id)
        return removed

    async def list_range(self, start: datetime.date, end: datetime.date) -> List[Assignment]:
        return await self._offload(self._list_range, start, end)

    async def list_requests(self, start: datetime.date, end: datetime.date) -> List[PendingRequest]:
        return await self._offload(self._list_requests, start, end)

    async def set_request_status(self, request_id: int, status: str, comment: Optional[str] = None) -> PendingRequest:
        return await self._offload(self._set_request_status, request_id, status, comment)

    async def notify(self, person_id: int, date_value: datetime.date, kind: str, message: str) -> None:
        await self._offload(self._notify, person_id, date_value, kind, message)

    def _create(self, payload: Dict[str, Any]) -> Assignment:
        with self.session_factory() as session:
            created = create_shift_entry(session, payload)
            record_audit_log(
                session,
                user_id=self.actor,
                action="SHIFT_CREATE",
                target_id=created.id,
                payload=created.to_dict(),
            )
        return created

    def _update(self, entry_id: int, changes: Dict[str, Any]) -> Assignment:
        with self.session_factory() as session:
            updated = update_shift_entry(session, entry_id, changes)
            record_audit_log(
                session,
                user_id=self.actor,
                action="SHIFT_UPDATE",
                target_id=updated.id,
                payload={key: value for key, value in changes.items()},
            )
        return updated

    def _delete(self, entry_id: int) -> bool:
        with self.session_factory() as session:
            removed = delete_shift_entry(session, entry_id)
            if removed:
                record_audit_log(session, user_id=self.actor, action="SHIFT_DELETE", target_id=entry_id)
        return removed

    def _list_range(self, start: datetime.date, end: datetime.date) -> List[Assignment]:
        with self.session_factory() as session:
            return list_shift_entries(session, start, end)

    def _list_requests(self, start: datetime.date, end: datetime.date) -> List[PendingRequest]:
        with self.session_factory() as session:
            return list_wish_requests(session, start, end)

    def _set_request_status(self, request_id: int, status: str, comment: Optional[str]) -> PendingRequest:
        with self.session_factory() as session:
            request = set_wish_status(session, request_id, status, comment=comment)
            record_audit_log(
                session,
                user_id=self.actor,
                action="WISH_STATUS",
                target_type="WishRequest",
                target_id=request_id,
                payload={"status": request.status},
            )
        return request

    def _notify(self, person_id: int, date_value: datetime.date, kind: str, message: str) -> None:
        with self.session_factory() as session:
            create_notification(session, person_id, date_value, kind, message)
