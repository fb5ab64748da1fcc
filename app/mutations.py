from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from database import StaleReference
from occupancy import OccupancyStore
from roster import Assignment, AssignmentId, is_temp_id
from storage import ShiftStore
from undo import (
    INVERSE_BULK_CREATE,
    INVERSE_BULK_DELETE,
    INVERSE_CREATE,
    INVERSE_DELETE,
    INVERSE_UPDATE,
    InverseOp,
    UndoGroup,
    UndoLog,
)
from wishes import WishBook

logger = logging.getLogger(__name__)

Payload = Union[Dict[str, Any], Assignment]
_IDENTITY_FIELDS = ("person_id", "date", "position")


class MutationFailed(Exception):
    """Storage rejected a mutation; the local state was rolled back."""

    def __init__(self, message: str, *, item: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.item = item


@dataclass
class BulkResult:
    succeeded: List[Assignment] = field(default_factory=list)
    failed: List[Tuple[Any, str]] = field(default_factory=list)
    # Input positions of the succeeded items.
    indexes: List[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": [record.to_dict() for record in self.succeeded],
            "failed": [
                {"item": item.to_dict() if isinstance(item, Assignment) else item, "error": error}
                for item, error in self.failed
            ],
        }


def _fields_of(payload: Payload) -> Dict[str, Any]:
    if isinstance(payload, Assignment):
        return payload.fields()
    data = dict(payload)
    data.pop("id", None)
    return data


class MutationOrchestrator:
    """Applies mutations optimistically, persists them, and records their inverses.

    Each call stages its change in the occupancy overlay before awaiting
    storage. On success the overlay entry is folded into the confirmed
    records; on failure the overlay is restored from the snapshot taken
    before the call and :class:`MutationFailed` is raised.
    """

    def __init__(
        self,
        store: OccupancyStore,
        backend: ShiftStore,
        undo_log: Optional[UndoLog] = None,
        *,
        wishes: Optional[WishBook] = None,
        actor_person_id: Optional[int] = None,
        notifications: bool = True,
    ) -> None:
        self.store = store
        self.backend = backend
        self.undo_log = undo_log if undo_log is not None else UndoLog()
        self.wishes = wishes
        self.actor_person_id = actor_person_id
        self.notifications = notifications
        self._aliases: Dict[AssignmentId, AssignmentId] = {}
        self._pending_notifications: Set[asyncio.Task] = set()

    # Single-record operations.

    async def create(self, payload: Payload, *, record_undo: bool = True) -> Assignment:
        values = _fields_of(payload)
        snapshot = self.store.snapshot()
        staged = self.store.stage_create(Assignment(id=self.store.new_temp_id(), **values))
        try:
            created = await self.backend.create(staged.fields())
        except Exception as exc:
            self.store.restore(snapshot)
            logger.warning("create rolled back: %s", exc)
            raise MutationFailed(str(exc), item=values) from exc
        self.store.commit(staged.id, created)
        await self._wish_created(created)
        if record_undo:
            self.undo_log.record(InverseOp(INVERSE_DELETE, [created.id]))
        self._notify(created, "create")
        return created

    async def update(
        self,
        assignment_id: AssignmentId,
        changes: Dict[str, Any],
        *,
        record_undo: bool = True,
    ) -> Optional[Assignment]:
        assignment_id = self.resolve(assignment_id)
        current = self.store.get(assignment_id)
        if current is None:
            logger.info("update skipped, assignment %s is gone", assignment_id)
            return None
        if is_temp_id(assignment_id):
            raise MutationFailed(f"Assignment {assignment_id} has not been saved yet.", item=changes)
        changes = {key: value for key, value in changes.items() if key != "id"}
        snapshot = self.store.snapshot()
        self.store.stage_update(assignment_id, current.copy(**changes))
        try:
            updated = await self.backend.update(assignment_id, changes)
        except StaleReference:
            self.store.commit(assignment_id, None)
            logger.info("update skipped, assignment %s no longer stored", assignment_id)
            return None
        except Exception as exc:
            self.store.restore(snapshot)
            logger.warning("update of %s rolled back: %s", assignment_id, exc)
            raise MutationFailed(str(exc), item=changes) from exc
        self.store.commit(assignment_id, updated)
        if any(getattr(current, key) != getattr(updated, key) for key in _IDENTITY_FIELDS):
            await self._wish_deleted(current)
            await self._wish_created(updated)
        if record_undo:
            self.undo_log.record(InverseOp(INVERSE_UPDATE, [assignment_id], [current]))
        self._notify(updated, "update")
        return updated

    async def delete(self, assignment_id: AssignmentId, *, record_undo: bool = True) -> Optional[Assignment]:
        assignment_id = self.resolve(assignment_id)
        current = self.store.get(assignment_id)
        if current is None:
            logger.info("delete skipped, assignment %s is gone", assignment_id)
            return None
        if is_temp_id(assignment_id):
            self.store.stage_delete(assignment_id)
            return current
        snapshot = self.store.snapshot()
        self.store.stage_delete(assignment_id)
        try:
            removed = await self.backend.delete(assignment_id)
        except Exception as exc:
            self.store.restore(snapshot)
            logger.warning("delete of %s rolled back: %s", assignment_id, exc)
            raise MutationFailed(str(exc), item=current) from exc
        self.store.commit(assignment_id, None)
        if not removed:
            return None
        await self._wish_deleted(current)
        if record_undo:
            self.undo_log.record(InverseOp(INVERSE_CREATE, records=[current]))
        self._notify(current, "delete")
        return current

    # Bulk operations share one staged overlay update and one undo entry.

    async def bulk_create(self, payloads: Iterable[Payload], *, record_undo: bool = True) -> BulkResult:
        staged: List[Assignment] = [
            self.store.stage_create(Assignment(id=self.store.new_temp_id(), **_fields_of(payload)))
            for payload in payloads
        ]
        result = BulkResult()
        for index, record in enumerate(staged):
            try:
                created = await self.backend.create(record.fields())
            except Exception as exc:
                self.store.discard(record.id)
                logger.warning("bulk create item rolled back: %s", exc)
                result.failed.append((record.fields(), str(exc)))
                continue
            self.store.commit(record.id, created)
            await self._wish_created(created)
            self._notify(created, "create")
            result.succeeded.append(created)
            result.indexes.append(index)
        if record_undo and result.succeeded:
            self.undo_log.record(InverseOp(INVERSE_BULK_DELETE, [record.id for record in result.succeeded]))
        if staged and not result.succeeded:
            raise MutationFailed("; ".join(error for _, error in result.failed))
        return result

    async def bulk_delete(self, assignment_ids: Iterable[AssignmentId], *, record_undo: bool = True) -> BulkResult:
        targets: List[Assignment] = []
        for assignment_id in assignment_ids:
            current = self.store.get(self.resolve(assignment_id))
            if current is None:
                logger.info("bulk delete skipped missing assignment %s", assignment_id)
                continue
            targets.append(current)
        for record in targets:
            self.store.stage_delete(record.id)
        result = BulkResult()
        persisted: List[Assignment] = []
        for record in targets:
            if is_temp_id(record.id):
                result.succeeded.append(record)
                continue
            try:
                removed = await self.backend.delete(record.id)
            except Exception as exc:
                self.store.discard(record.id)
                logger.warning("bulk delete of %s rolled back: %s", record.id, exc)
                result.failed.append((record, str(exc)))
                continue
            self.store.commit(record.id, None)
            if not removed:
                continue
            await self._wish_deleted(record)
            self._notify(record, "delete")
            result.succeeded.append(record)
            persisted.append(record)
        if record_undo and persisted:
            self.undo_log.record(InverseOp(INVERSE_BULK_CREATE, records=persisted))
        if targets and not result.succeeded and result.failed:
            raise MutationFailed("; ".join(error for _, error in result.failed))
        return result

    # Undo.

    def resolve(self, assignment_id: AssignmentId) -> AssignmentId:
        """Follow ids of records that undo re-created under a new id."""
        seen = set()
        while assignment_id in self._aliases and assignment_id not in seen:
            seen.add(assignment_id)
            assignment_id = self._aliases[assignment_id]
        return assignment_id

    async def apply_inverse(self, op: InverseOp) -> None:
        if op.kind == INVERSE_DELETE:
            for target in op.target_ids:
                await self.delete(target, record_undo=False)
        elif op.kind == INVERSE_BULK_DELETE:
            result = await self.bulk_delete(op.target_ids, record_undo=False)
            if result.failed:
                raise MutationFailed("; ".join(error for _, error in result.failed))
        elif op.kind == INVERSE_CREATE:
            for record in self._not_restored(op.records):
                created = await self.create(record, record_undo=False)
                self._aliases[record.id] = created.id
        elif op.kind == INVERSE_BULK_CREATE:
            records = self._not_restored(op.records)
            result = await self.bulk_create(records, record_undo=False)
            for index, created in zip(result.indexes, result.succeeded):
                self._aliases[records[index].id] = created.id
            if result.failed:
                raise MutationFailed("; ".join(error for _, error in result.failed))
        elif op.kind == INVERSE_UPDATE:
            for target, record in zip(op.target_ids, op.records):
                await self.update(target, record.fields(), record_undo=False)
        else:
            raise ValueError(f"Unknown inverse operation '{op.kind}'.")

    def _not_restored(self, records: List[Assignment]) -> List[Assignment]:
        """Records an earlier, interrupted undo has not re-created yet."""
        return [record for record in records if self.store.get(self.resolve(record.id)) is None]

    async def undo(self) -> Optional[UndoGroup]:
        """Revert the newest gesture. Undo itself is not recorded, so there is no redo.

        When an inverse fails, the inverses that did not complete go back on
        the log as one group, so a later undo can finish the job.
        """
        group = self.undo_log.pop()
        if group is None:
            return None
        for index, op in enumerate(group.ops):
            try:
                await self.apply_inverse(op)
            except Exception:
                self.undo_log.restore(UndoGroup(group.label, group.ops[index:]))
                logger.warning("undo of '%s' stopped after %d of %d steps", group.label, index, len(group.ops))
                raise
        return group

    # Side channels.

    async def _wish_created(self, record: Assignment) -> None:
        if self.wishes is None:
            return
        try:
            await self.wishes.on_created(record)
        except Exception:
            logger.exception("wish approval failed for assignment %s", record.id)

    async def _wish_deleted(self, record: Assignment) -> None:
        if self.wishes is None:
            return
        try:
            await self.wishes.on_deleted(record)
        except Exception:
            logger.exception("wish revert failed for assignment %s", record.id)

    def _notify(self, record: Assignment, kind: str) -> None:
        if not self.notifications:
            return
        if self.actor_person_id is not None and record.person_id == self.actor_person_id:
            return
        message = f"{kind}: {record.position} on {record.date.isoformat()}"
        task = asyncio.ensure_future(self.backend.notify(record.person_id, record.date, kind, message))
        self._pending_notifications.add(task)
        task.add_done_callback(self._notification_done)

    def _notification_done(self, task: asyncio.Task) -> None:
        self._pending_notifications.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("notification failed: %s", exc)

    async def drain_notifications(self) -> None:
        if self._pending_notifications:
            await asyncio.gather(*list(self._pending_notifications), return_exceptions=True)
