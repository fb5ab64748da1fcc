from __future__ import annotations

import copy
import datetime
import itertools
from typing import Any, Dict, Iterable, List, Optional, Tuple

from roster import (
    TEMP_ID_PREFIX,
    Assignment,
    AssignmentId,
    RosterCatalog,
    coerce_date,
    is_temp_id,
    sort_cell,
)

ANY_BUCKET = object()

Snapshot = Tuple[Dict[AssignmentId, Assignment], Dict[AssignmentId, Optional[Assignment]]]


class OccupancyStore:
    """Read model of the assignments in a date window.

    Confirmed records come from storage. Mutations that are still in flight
    live in an overlay keyed by assignment id, where ``None`` marks a pending
    delete. Readers always see the merged view and cannot tell the two apart.
    """

    def __init__(
        self,
        catalog: RosterCatalog,
        start: Optional[datetime.date] = None,
        end: Optional[datetime.date] = None,
    ) -> None:
        self.catalog = catalog
        self.start = coerce_date(start) if start else None
        self.end = coerce_date(end) if end else None
        self._confirmed: Dict[AssignmentId, Assignment] = {}
        self._overlay: Dict[AssignmentId, Optional[Assignment]] = {}
        self._temp_ids = itertools.count(1)

    def load(
        self,
        records: Iterable[Assignment],
        start: Optional[datetime.date] = None,
        end: Optional[datetime.date] = None,
    ) -> None:
        if start is not None:
            self.start = coerce_date(start)
        if end is not None:
            self.end = coerce_date(end)
        self._overlay.clear()
        self._confirmed = {record.id: record for record in records if self.in_window(record.date)}

    def in_window(self, date_value: datetime.date) -> bool:
        date_value = coerce_date(date_value)
        if self.start and date_value < self.start:
            return False
        if self.end and date_value > self.end:
            return False
        return True

    def _merged(self) -> Dict[AssignmentId, Assignment]:
        merged = dict(self._confirmed)
        for key, record in self._overlay.items():
            if record is None:
                merged.pop(key, None)
            else:
                merged[key] = record
        return merged

    def all(self) -> List[Assignment]:
        return list(self._merged().values())

    def get(self, assignment_id: AssignmentId) -> Optional[Assignment]:
        if assignment_id in self._overlay:
            return self._overlay[assignment_id]
        return self._confirmed.get(assignment_id)

    def __contains__(self, assignment_id: AssignmentId) -> bool:
        return self.get(assignment_id) is not None

    def __len__(self) -> int:
        return len(self._merged())

    def bucket_of(self, record: Assignment) -> Any:
        return self.catalog.bucket(record.position, record.timeslot_id)

    def query(self, date_value: datetime.date, position: str, bucket: Any = ANY_BUCKET) -> List[Assignment]:
        """Return the assignments of one cell ordered for display."""
        date_value = coerce_date(date_value)
        if not self.in_window(date_value):
            return []
        matches = [
            record
            for record in self._merged().values()
            if record.date == date_value
            and record.position == position
            and (bucket is ANY_BUCKET or self.bucket_of(record) == bucket)
        ]
        return sort_cell(matches)

    def on_date(self, date_value: datetime.date) -> List[Assignment]:
        date_value = coerce_date(date_value)
        return sort_cell(record for record in self._merged().values() if record.date == date_value)

    def for_person(self, person_id: int, date_value: datetime.date) -> List[Assignment]:
        date_value = coerce_date(date_value)
        return sort_cell(
            record
            for record in self._merged().values()
            if record.person_id == person_id and record.date == date_value
        )

    def in_month(self, person_id: int, year: int, month: int) -> List[Assignment]:
        return [
            record
            for record in self._merged().values()
            if record.person_id == person_id and record.date.year == year and record.date.month == month
        ]

    def between(self, start: datetime.date, end: datetime.date) -> List[Assignment]:
        start, end = coerce_date(start), coerce_date(end)
        records = [record for record in self._merged().values() if start <= record.date <= end]
        return sorted(records, key=lambda r: (r.date, r.position, r.order, str(r.id)))

    def next_order(self, date_value: datetime.date, position: str, bucket: Any = ANY_BUCKET) -> int:
        cell = self.query(date_value, position, bucket)
        if not cell:
            return 0
        return max(record.order for record in cell) + 1

    # Overlay maintenance used by the mutation orchestrator.

    def new_temp_id(self) -> str:
        return f"{TEMP_ID_PREFIX}{next(self._temp_ids)}"

    def is_pending(self, assignment_id: AssignmentId) -> bool:
        return assignment_id in self._overlay

    def stage_create(self, record: Assignment) -> Assignment:
        if not is_temp_id(record.id):
            record = record.copy(id=self.new_temp_id())
        self._overlay[record.id] = record
        return record

    def stage_update(self, assignment_id: AssignmentId, record: Assignment) -> None:
        self._overlay[assignment_id] = record

    def stage_delete(self, assignment_id: AssignmentId) -> None:
        if is_temp_id(assignment_id):
            self._overlay.pop(assignment_id, None)
            return
        self._overlay[assignment_id] = None

    def commit(self, key: AssignmentId, record: Optional[Assignment]) -> None:
        """Fold a pending overlay entry into the confirmed records.

        ``key`` is the overlay key (a temporary id for creates); ``record`` is
        what storage returned, or ``None`` when the record is gone.
        """
        self._overlay.pop(key, None)
        self._confirmed.pop(key, None)
        if record is not None:
            self._confirmed[record.id] = record

    def discard(self, key: AssignmentId) -> None:
        self._overlay.pop(key, None)

    def snapshot(self) -> Snapshot:
        return copy.deepcopy(self._confirmed), copy.deepcopy(self._overlay)

    def restore(self, snapshot: Snapshot) -> None:
        confirmed, overlay = snapshot
        self._confirmed = copy.deepcopy(confirmed)
        self._overlay = copy.deepcopy(overlay)
