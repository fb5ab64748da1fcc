from __future__ import annotations

import datetime
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from positions import (
    CATEGORY_DUTY,
    CATEGORY_ROTATION,
    ROTATION_CONCURRENCY_DEFAULTS,
    is_exclusive_category,
    normalize_category,
    normalize_position,
    role_rank,
)


AssignmentId = Union[int, str]
# Bucket for legacy rows without a timeslot on a multi-slot workplace.
UNASSIGNED_BUCKET = "__unassigned__"
TEMP_ID_PREFIX = "temp-"


def is_temp_id(assignment_id: Optional[AssignmentId]) -> bool:
    return isinstance(assignment_id, str) and assignment_id.startswith(TEMP_ID_PREFIX)


def coerce_date(value: Any) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str):
        return datetime.date.fromisoformat(value.strip()[:10])
    raise TypeError(f"Expected a date, got {type(value).__name__}.")


def week_monday(date_value: datetime.date) -> datetime.date:
    """Return the Monday for the provided date."""
    date_value = coerce_date(date_value)
    return date_value - datetime.timedelta(days=date_value.weekday())


@dataclass
class Person:
    id: int
    name: str
    initials: str = ""
    role: str = ""
    order: int = 0
    fte: float = 1.0


@dataclass
class WorkSlotDefinition:
    id: int
    name: str
    category: str = CATEGORY_DUTY
    order: int = 0
    auto_rest_after: bool = False
    allows_rotation_concurrency: Optional[bool] = None
    allows_consecutive_days: bool = True
    affects_availability: bool = True
    timeslots_enabled: bool = False

    def __post_init__(self) -> None:
        self.category = normalize_category(self.category)

    @property
    def rotation_concurrency(self) -> bool:
        if self.allows_rotation_concurrency is None:
            return ROTATION_CONCURRENCY_DEFAULTS.get(self.category, True)
        return bool(self.allows_rotation_concurrency)

    @property
    def exclusive(self) -> bool:
        return is_exclusive_category(self.category)


@dataclass
class Timeslot:
    id: int
    workplace_id: int
    label: str
    start_time: Optional[datetime.time] = None
    end_time: Optional[datetime.time] = None
    order: int = 0


@dataclass
class Assignment:
    id: AssignmentId
    person_id: int
    date: datetime.date
    position: str
    timeslot_id: Optional[int] = None
    order: int = 0
    note: str = ""

    def __post_init__(self) -> None:
        self.date = coerce_date(self.date)
        self.position = normalize_position(self.position)
        self.note = self.note or ""

    @property
    def pending(self) -> bool:
        return is_temp_id(self.id)

    def copy(self, **changes: Any) -> "Assignment":
        return replace(self, **changes)

    def fields(self) -> Dict[str, Any]:
        """Return the persisted payload without the identity."""
        return {
            "person_id": self.person_id,
            "date": self.date,
            "position": self.position,
            "timeslot_id": self.timeslot_id,
            "order": self.order,
            "note": self.note,
        }

    def to_dict(self) -> Dict[str, Any]:
        payload = {"id": self.id}
        payload.update(self.fields())
        payload["date"] = self.date.isoformat()
        return payload

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "Assignment":
        timeslot_id = data.get("timeslot_id")
        return cls(
            id=data.get("id"),
            person_id=int(data["person_id"]),
            date=coerce_date(data["date"]),
            position=data.get("position") or "",
            timeslot_id=int(timeslot_id) if timeslot_id not in (None, "") else None,
            order=int(data.get("order") or 0),
            note=data.get("note") or "",
        )


@dataclass
class PendingRequest:
    id: int
    person_id: int
    date: datetime.date
    type: str = "service"
    position: Optional[str] = None
    status: str = "pending"
    admin_comment: str = ""

    def __post_init__(self) -> None:
        self.date = coerce_date(self.date)


@dataclass
class RosterCatalog:
    """Read-only view of the people, workplaces and timeslots an editing session works with."""

    persons: List[Person] = field(default_factory=list)
    workplaces: List[WorkSlotDefinition] = field(default_factory=list)
    timeslots: List[Timeslot] = field(default_factory=list)
    # (person_id, year, month) -> FTE for that month.
    staffing_entries: Dict[Tuple[int, int, int], float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._persons = {person.id: person for person in self.persons}
        self._workplaces = {workplace.name: workplace for workplace in self.workplaces}
        self._workplaces_by_id = {workplace.id: workplace for workplace in self.workplaces}

    def person(self, person_id: int) -> Optional[Person]:
        return self._persons.get(person_id)

    def sorted_persons(self) -> List[Person]:
        return sorted(self.persons, key=lambda p: (role_rank(p.role), p.order, p.name))

    def workplace(self, position: Optional[str]) -> Optional[WorkSlotDefinition]:
        return self._workplaces.get(normalize_position(position))

    def category(self, position: Optional[str]) -> Optional[str]:
        workplace = self.workplace(position)
        return workplace.category if workplace else None

    def positions_in(self, category: str) -> List[str]:
        matches = [w for w in self.workplaces if w.category == category]
        return [w.name for w in sorted(matches, key=lambda w: (w.order, w.id))]

    def duty_positions(self) -> List[str]:
        return self.positions_in(CATEGORY_DUTY)

    def rotation_positions(self) -> List[str]:
        return self.positions_in(CATEGORY_ROTATION)

    def timeslots_for(self, position: Optional[str]) -> List[Timeslot]:
        workplace = self.workplace(position)
        if not workplace or not workplace.timeslots_enabled:
            return []
        slots = [slot for slot in self.timeslots if slot.workplace_id == workplace.id]
        return sorted(slots, key=lambda slot: (slot.order, slot.id))

    def resolve_timeslot(self, position: Optional[str], timeslot_id: Optional[int]) -> Optional[int]:
        """Collapse a missing slot id onto the single timeslot of a one-slot workplace."""
        slots = self.timeslots_for(position)
        if timeslot_id is not None:
            return timeslot_id
        if len(slots) == 1:
            return slots[0].id
        return None

    def bucket(self, position: Optional[str], timeslot_id: Optional[int]) -> Optional[Union[int, str]]:
        """Return the sub-cell key of an assignment.

        Workplaces with zero or one timeslot have a single bucket (``None``).
        Multi-slot workplaces bucket by slot id, and rows without a slot id
        fall into :data:`UNASSIGNED_BUCKET`.
        """
        slots = self.timeslots_for(position)
        if len(slots) < 2:
            return None
        if timeslot_id is None:
            return UNASSIGNED_BUCKET
        return timeslot_id

    def fte_for(self, person_id: int, date_value: datetime.date) -> float:
        entry = self.staffing_entries.get((person_id, date_value.year, date_value.month))
        if entry is not None:
            try:
                return float(str(entry).replace(",", "."))
            except (TypeError, ValueError):
                return 0.0
        person = self.person(person_id)
        if person is None or person.fte is None:
            return 1.0
        return float(person.fte)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RosterCatalog":
        persons = [
            Person(
                id=int(item["id"]),
                name=item.get("name") or "",
                initials=item.get("initials") or "",
                role=item.get("role") or "",
                order=int(item.get("order") or 0),
                fte=float(item["fte"]) if item.get("fte") is not None else 1.0,
            )
            for item in payload.get("persons") or []
        ]
        workplaces = [
            WorkSlotDefinition(
                id=int(item["id"]),
                name=item.get("name") or "",
                category=item.get("category") or CATEGORY_DUTY,
                order=int(item.get("order") or 0),
                auto_rest_after=bool(item.get("auto_rest_after", False)),
                allows_rotation_concurrency=item.get("allows_rotation_concurrency"),
                allows_consecutive_days=bool(item.get("allows_consecutive_days", True)),
                affects_availability=bool(item.get("affects_availability", True)),
                timeslots_enabled=bool(item.get("timeslots_enabled", False)),
            )
            for item in payload.get("workplaces") or []
        ]
        timeslots = [
            Timeslot(
                id=int(item["id"]),
                workplace_id=int(item["workplace_id"]),
                label=item.get("label") or "",
                start_time=_parse_time(item.get("start_time")),
                end_time=_parse_time(item.get("end_time")),
                order=int(item.get("order") or 0),
            )
            for item in payload.get("timeslots") or []
        ]
        return cls(persons=persons, workplaces=workplaces, timeslots=timeslots)


def _parse_time(value: Any) -> Optional[datetime.time]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime.time):
        return value
    return datetime.time.fromisoformat(str(value))


def _id_key(assignment_id: AssignmentId) -> Tuple[int, int, str]:
    if isinstance(assignment_id, int):
        return (0, assignment_id, "")
    return (1, 0, str(assignment_id))


def sort_cell(assignments: Iterable[Assignment]) -> List[Assignment]:
    return sorted(assignments, key=lambda a: (a.order, _id_key(a.id)))
