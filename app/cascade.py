from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from occupancy import OccupancyStore
from policy import RuleSettings
from roster import Assignment, AssignmentId, RosterCatalog, coerce_date
from undo import UndoGroup
from workdays import HolidayCalendar, next_workday

HolidayPredicate = Callable[[datetime.date], bool]

PLAN_CREATE = "create"
PLAN_EXISTS = "exists"
PLAN_CONFLICT = "conflict"


@dataclass
class CascadeConflict:
    """The rest day lands on a date where the person already has another entry."""

    person_id: int
    date: datetime.date
    existing: Assignment
    origin_id: Optional[AssignmentId] = None
    origin_position: str = ""
    # Group of the gesture that produced the conflict.
    undo_group: Optional[UndoGroup] = field(default=None, repr=False, compare=False)

    @property
    def message(self) -> str:
        return (
            f'Rest day after "{self.origin_position}" falls on {self.date.isoformat()}, '
            f'which already holds "{self.existing.position}".'
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "person_id": self.person_id,
            "date": self.date.isoformat(),
            "existing": self.existing.to_dict(),
            "origin_id": self.origin_id,
            "origin_position": self.origin_position,
            "message": self.message,
        }


@dataclass
class CascadePlan:
    target_date: datetime.date
    action: str
    conflict: Optional[CascadeConflict] = None


class AutoRestCascader:
    def __init__(
        self,
        catalog: RosterCatalog,
        store: OccupancyStore,
        settings: Optional[RuleSettings] = None,
        calendar: Optional[HolidayCalendar] = None,
    ) -> None:
        self.catalog = catalog
        self.store = store
        self.settings = settings or RuleSettings()
        self.calendar = calendar or HolidayCalendar()

    @property
    def rest_position(self) -> str:
        return self.settings.rest_position

    def triggers_rest(self, position: str) -> bool:
        if position == self.rest_position:
            return False
        workplace = self.catalog.workplace(position)
        return bool(workplace and workplace.auto_rest_after)

    def should_cascade_rest(
        self,
        position: str,
        date_value: datetime.date,
        is_holiday: Optional[HolidayPredicate] = None,
    ) -> Optional[datetime.date]:
        """Return the workday that receives the rest entry, or ``None`` when nothing cascades."""
        if not self.triggers_rest(position):
            return None
        predicate = is_holiday if is_holiday is not None else self.calendar.is_holiday
        return next_workday(coerce_date(date_value), predicate)

    def plan(self, origin: Assignment) -> Optional[CascadePlan]:
        target = self.should_cascade_rest(origin.position, origin.date)
        if target is None:
            return None
        records = self.store.for_person(origin.person_id, target)
        if any(record.position == self.rest_position for record in records):
            return CascadePlan(target, PLAN_EXISTS)
        if records:
            return CascadePlan(
                target,
                PLAN_CONFLICT,
                CascadeConflict(
                    person_id=origin.person_id,
                    date=target,
                    existing=records[0],
                    origin_id=origin.id,
                    origin_position=origin.position,
                ),
            )
        return CascadePlan(target, PLAN_CREATE)

    def rest_payload(self, person_id: int, date_value: datetime.date) -> Dict[str, Any]:
        return {
            "person_id": person_id,
            "date": coerce_date(date_value),
            "position": self.rest_position,
            "timeslot_id": None,
            "order": self.store.next_order(date_value, self.rest_position),
            "note": self.settings.rest_note,
        }

    def is_auto_rest(self, record: Optional[Assignment]) -> bool:
        return bool(
            record
            and record.position == self.rest_position
            and self.settings.rest_note.lower() in (record.note or "").lower()
        )

    def find_rest_to_cleanup(
        self,
        person_id: int,
        date_value: datetime.date,
        position: str,
    ) -> Optional[Assignment]:
        """Return the cascade-created rest entry belonging to a duty, if it is still untouched."""
        target = self.should_cascade_rest(position, date_value)
        if target is None:
            return None
        for record in self.store.for_person(person_id, target):
            if self.is_auto_rest(record):
                return record
        return None
