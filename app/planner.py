"""Gesture layer of the roster engine.

A :class:`RosterPlanner` is one editing session. Every planner gesture runs
validate -> (override?) -> mutate -> cascade and leaves exactly one undo group
behind, so a single ``undo()`` reverts the whole gesture including any rest
day it produced.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from cascade import PLAN_CONFLICT, PLAN_CREATE, AutoRestCascader, CascadeConflict
from mutations import BulkResult, MutationOrchestrator
from occupancy import OccupancyStore
from override import OverrideCoordinator, OverrideRequest
from policy import RuleSettings
from positions import AVAILABLE, is_absence, normalize_position
from roster import Assignment, AssignmentId, PendingRequest, Person, RosterCatalog, coerce_date
from storage import ShiftStore
from undo import UndoGroup, UndoLog
from validation import ValidationResult, ShiftValidator, validate_roster
from wishes import WishBook
from workdays import HolidayCalendar, days_of_week, weekdays_of

logger = logging.getLogger(__name__)

APPLIED = "applied"
PENDING_OVERRIDE = "pending_override"
DUPLICATE = "duplicate"
NOT_FOUND = "not_found"
SKIPPED = "skipped"
BLOCKED = "blocked"


@dataclass
class GestureResult:
    status: str = APPLIED
    created: List[Assignment] = field(default_factory=list)
    updated: List[Assignment] = field(default_factory=list)
    removed: List[Assignment] = field(default_factory=list)
    blockers: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    cascade_date: Optional[datetime.date] = None
    cascade_conflict: Optional[CascadeConflict] = None
    override: Optional[OverrideRequest] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "created": [record.to_dict() for record in self.created],
            "updated": [record.to_dict() for record in self.updated],
            "removed": [record.to_dict() for record in self.removed],
            "blockers": list(self.blockers),
            "warnings": list(self.warnings),
            "cascade_date": self.cascade_date.isoformat() if self.cascade_date else None,
            "cascade_conflict": self.cascade_conflict.to_dict() if self.cascade_conflict else None,
            "override": self.override.to_dict() if self.override else None,
        }


@dataclass
class DayOutcome:
    date: datetime.date
    status: str
    messages: List[str] = field(default_factory=list)


@dataclass
class BatchResult:
    """Per-item outcome of week assignment and generated suggestions."""

    outcomes: List[DayOutcome] = field(default_factory=list)
    created: List[Assignment] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def counts(self) -> Dict[str, int]:
        return {status: self.count(status) for status in (APPLIED, BLOCKED, DUPLICATE)}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "counts": self.counts,
            "outcomes": [
                {"date": outcome.date.isoformat(), "status": outcome.status, "messages": outcome.messages}
                for outcome in self.outcomes
            ],
            "created": [record.to_dict() for record in self.created],
        }


class RosterPlanner:
    def __init__(
        self,
        catalog: RosterCatalog,
        backend: ShiftStore,
        *,
        settings: Optional[RuleSettings] = None,
        calendar: Optional[HolidayCalendar] = None,
        start: Optional[datetime.date] = None,
        end: Optional[datetime.date] = None,
        actor_person_id: Optional[int] = None,
        requests: Optional[Iterable[PendingRequest]] = None,
    ) -> None:
        self.catalog = catalog
        self.backend = backend
        self.settings = settings or RuleSettings()
        self.calendar = calendar or HolidayCalendar()
        self.store = OccupancyStore(catalog, start, end)
        self.validator = ShiftValidator(self.store, catalog, self.settings)
        self.cascader = AutoRestCascader(catalog, self.store, self.settings, self.calendar)
        self.overrides = OverrideCoordinator()
        self.undo_log = UndoLog(self.settings.undo_depth)
        self.wishes = WishBook(backend, requests)
        self.mutations = MutationOrchestrator(
            self.store,
            backend,
            self.undo_log,
            wishes=self.wishes,
            actor_person_id=actor_person_id,
        )

    def apply_settings(self, settings: RuleSettings) -> None:
        self.settings = settings
        self.validator.settings = settings
        self.cascader.settings = settings
        self.undo_log.max_groups = settings.undo_depth

    def set_calendar(self, calendar: HolidayCalendar) -> None:
        self.calendar = calendar
        self.cascader.calendar = calendar

    async def load_window(self, start: datetime.date, end: datetime.date) -> None:
        start, end = coerce_date(start), coerce_date(end)
        records = await self.backend.list_range(start, end)
        self.store.load(records, start, end)
        self.wishes.load(await self.backend.list_requests(start, end))
        logger.debug("loaded %d assignments for %s..%s", len(records), start, end)

    def validate(
        self,
        person_id: int,
        date_value: datetime.date,
        position: str,
        *,
        exclude_assignment_id: Optional[AssignmentId] = None,
        skip_limits: bool = False,
    ) -> ValidationResult:
        return self.validator.validate(
            person_id,
            date_value,
            normalize_position(position),
            exclude_assignment_id=exclude_assignment_id,
            skip_limits=skip_limits,
        )

    # Override workflow.

    def _hold(self, validation: ValidationResult, context: Dict[str, Any], continuation) -> GestureResult:
        request = self.overrides.request_override(validation.blockers, validation.warnings, context, continuation)
        return GestureResult(
            status=PENDING_OVERRIDE,
            blockers=validation.blockers,
            warnings=validation.warnings,
            override=request,
        )

    async def confirm_override(self) -> GestureResult:
        return await self.overrides.confirm()

    def cancel_override(self) -> None:
        self.overrides.cancel()

    # Gestures.

    def _slots_for(self, position: str, timeslot_id: Optional[int], all_timeslots: bool) -> List[Optional[int]]:
        slots = self.catalog.timeslots_for(position)
        if all_timeslots and len(slots) >= 2:
            return [slot.id for slot in slots]
        return [self.catalog.resolve_timeslot(position, timeslot_id)]

    def _holds_bucket(
        self,
        person_id: int,
        date_value: datetime.date,
        position: str,
        timeslot_id: Optional[int],
        ignore_id: Optional[AssignmentId] = None,
    ) -> bool:
        bucket = self.catalog.bucket(position, timeslot_id)
        return any(
            record.person_id == person_id and record.id != ignore_id
            for record in self.store.query(date_value, position, bucket)
        )

    async def assign(
        self,
        person_id: int,
        date_value: datetime.date,
        position: str,
        timeslot_id: Optional[int] = None,
        *,
        all_timeslots: bool = False,
        note: str = "",
        override: bool = False,
    ) -> GestureResult:
        date_value = coerce_date(date_value)
        position = normalize_position(position)
        if not position or position == AVAILABLE:
            return GestureResult(status=SKIPPED)
        slots = [
            slot
            for slot in self._slots_for(position, timeslot_id, all_timeslots)
            if not self._holds_bucket(person_id, date_value, position, slot)
        ]
        if not slots:
            return GestureResult(status=DUPLICATE, warnings=["Person is already assigned here."])
        validation = self.validate(person_id, date_value, position)
        if not validation.can_proceed and not override:
            context = {"action": "assign", "person_id": person_id, "date": date_value.isoformat(), "position": position}
            return self._hold(
                validation,
                context,
                lambda: self.assign(
                    person_id,
                    date_value,
                    position,
                    timeslot_id,
                    all_timeslots=all_timeslots,
                    note=note,
                    override=True,
                ),
            )
        result = GestureResult(warnings=validation.warnings + (validation.blockers if override else []))
        with self.undo_log.gesture("assign"):
            await self._apply_assign(person_id, date_value, position, slots, note, result)
        return result

    async def _apply_assign(
        self,
        person_id: int,
        date_value: datetime.date,
        position: str,
        slots: Sequence[Optional[int]],
        note: str,
        result: GestureResult,
    ) -> None:
        await self._make_room(person_id, date_value, position, slots, result)
        payloads = []
        for slot in slots:
            bucket = self.catalog.bucket(position, slot)
            payloads.append(
                {
                    "person_id": person_id,
                    "date": date_value,
                    "position": position,
                    "timeslot_id": slot,
                    "order": self.store.next_order(date_value, position, bucket),
                    "note": note,
                }
            )
        if len(payloads) == 1:
            result.created.append(await self.mutations.create(payloads[0]))
        else:
            bulk = await self.mutations.bulk_create(payloads)
            result.created.extend(bulk.succeeded)
            result.warnings.extend(error for _, error in bulk.failed)
        if result.created:
            await self._cascade(result.created[0], result)

    async def _make_room(
        self,
        person_id: int,
        date_value: datetime.date,
        position: str,
        slots: Sequence[Optional[int]],
        result: GestureResult,
        keep_id: Optional[AssignmentId] = None,
    ) -> None:
        """Remove what the new assignment replaces.

        An absence replaces the person's other entries of the day; an exclusive
        workplace displaces whoever holds the cell.
        """
        doomed: List[Assignment] = []
        if is_absence(position):
            doomed.extend(r for r in self.store.for_person(person_id, date_value) if r.id != keep_id)
        workplace = self.catalog.workplace(position)
        if workplace and workplace.exclusive:
            for slot in slots:
                bucket = self.catalog.bucket(position, slot)
                for record in self.store.query(date_value, position, bucket):
                    if record.person_id != person_id and record.id != keep_id:
                        doomed.append(record)
        seen = set()
        for record in doomed:
            if record.id in seen:
                continue
            seen.add(record.id)
            if record.person_id != person_id:
                logger.info("%s displaces person %s on %s", position, record.person_id, date_value)
            await self._remove_with_cleanup(record, result)

    async def _remove_with_cleanup(self, record: Assignment, result: GestureResult) -> None:
        if self.store.get(record.id) is None:
            return
        rest = self.cascader.find_rest_to_cleanup(record.person_id, record.date, record.position)
        if rest is not None and rest.id != record.id:
            bulk = await self.mutations.bulk_delete([record.id, rest.id])
            result.removed.extend(bulk.succeeded)
            result.warnings.extend(error for _, error in bulk.failed)
            return
        removed = await self.mutations.delete(record.id)
        if removed is not None:
            result.removed.append(removed)

    async def _cascade(self, origin: Assignment, result: GestureResult) -> None:
        plan = self.cascader.plan(origin)
        if plan is None:
            return
        result.cascade_date = plan.target_date
        if plan.action == PLAN_CONFLICT:
            plan.conflict.undo_group = self.undo_log.current
            result.cascade_conflict = plan.conflict
            result.warnings.append(plan.conflict.message)
            return
        if plan.action != PLAN_CREATE:
            return
        rest_check = self.validate(
            origin.person_id,
            plan.target_date,
            self.cascader.rest_position,
            exclude_assignment_id=origin.id,
        )
        result.warnings.extend(rest_check.warnings)
        rest = await self.mutations.create(self.cascader.rest_payload(origin.person_id, plan.target_date))
        result.created.append(rest)

    def _origin_group(self, conflict: CascadeConflict) -> Optional[UndoGroup]:
        if conflict.undo_group is not None:
            return conflict.undo_group if self.undo_log.holds(conflict.undo_group) else None
        if conflict.origin_id is None:
            return None
        return self.undo_log.find(self.mutations.resolve(conflict.origin_id))

    async def resolve_cascade_conflict(self, conflict: CascadeConflict) -> GestureResult:
        """Replace the conflicting entry with the rest day, as part of the original gesture.

        The replacement joins the undo group of the gesture that produced the
        conflict. Once that group has been undone or dropped the conflict is
        stale and nothing changes.
        """
        existing = self.store.get(self.mutations.resolve(conflict.existing.id))
        if existing is None:
            return GestureResult(status=NOT_FOUND)
        group = self._origin_group(conflict)
        if group is None:
            return GestureResult(
                status=NOT_FOUND,
                warnings=["The gesture behind this conflict can no longer be undone."],
            )
        result = GestureResult()
        with self.undo_log.gesture("cascade", reopen=group):
            others = [
                record
                for record in self.store.for_person(conflict.person_id, conflict.date)
                if record.id != existing.id
            ]
            for record in others:
                await self._remove_with_cleanup(record, result)
            updated = await self.mutations.update(
                existing.id,
                {
                    "position": self.cascader.rest_position,
                    "timeslot_id": None,
                    "order": self.store.next_order(conflict.date, self.cascader.rest_position),
                    "note": self.settings.rest_note,
                },
            )
        if updated is None:
            result.status = NOT_FOUND
        else:
            result.updated.append(updated)
        return result

    async def move(
        self,
        assignment_id: AssignmentId,
        date_value: datetime.date,
        position: str,
        timeslot_id: Optional[int] = None,
        *,
        override: bool = False,
    ) -> GestureResult:
        record = self.store.get(self.mutations.resolve(assignment_id))
        if record is None:
            return GestureResult(status=NOT_FOUND)
        date_value = coerce_date(date_value)
        position = normalize_position(position)
        if position == AVAILABLE:
            return await self.remove(record.id)
        slot = self.catalog.resolve_timeslot(position, timeslot_id)
        if record.date == date_value and record.position == position and record.timeslot_id == slot:
            return GestureResult(status=SKIPPED)
        if self._holds_bucket(record.person_id, date_value, position, slot, ignore_id=record.id):
            return GestureResult(status=DUPLICATE, warnings=["Person is already assigned here."])
        validation = self.validate(record.person_id, date_value, position, exclude_assignment_id=record.id)
        if not validation.can_proceed and not override:
            context = {
                "action": "move",
                "assignment_id": record.id,
                "date": date_value.isoformat(),
                "position": position,
            }
            return self._hold(
                validation,
                context,
                lambda: self.move(record.id, date_value, position, timeslot_id, override=True),
            )
        result = GestureResult(warnings=validation.warnings + (validation.blockers if override else []))
        with self.undo_log.gesture("move"):
            if record.date != date_value or record.position != position:
                rest = self.cascader.find_rest_to_cleanup(record.person_id, record.date, record.position)
                if rest is not None:
                    removed = await self.mutations.delete(rest.id)
                    if removed is not None:
                        result.removed.append(removed)
            await self._make_room(record.person_id, date_value, position, [slot], result, keep_id=record.id)
            updated = await self.mutations.update(
                record.id,
                {
                    "date": date_value,
                    "position": position,
                    "timeslot_id": slot,
                    "order": self.store.next_order(date_value, position, self.catalog.bucket(position, slot)),
                },
            )
            if updated is None:
                result.status = NOT_FOUND
                return result
            result.updated.append(updated)
            await self._cascade(updated, result)
        return result

    async def copy(
        self,
        assignment_id: AssignmentId,
        date_value: datetime.date,
        position: str,
        timeslot_id: Optional[int] = None,
        *,
        override: bool = False,
    ) -> GestureResult:
        record = self.store.get(self.mutations.resolve(assignment_id))
        if record is None:
            return GestureResult(status=NOT_FOUND)
        note = "" if self.cascader.is_auto_rest(record) else record.note
        return await self.assign(record.person_id, date_value, position, timeslot_id, note=note, override=override)

    async def remove(self, assignment_id: AssignmentId) -> GestureResult:
        record = self.store.get(self.mutations.resolve(assignment_id))
        if record is None:
            return GestureResult(status=NOT_FOUND)
        result = GestureResult()
        with self.undo_log.gesture("remove"):
            await self._remove_with_cleanup(record, result)
        return result

    async def reorder(
        self,
        date_value: datetime.date,
        position: str,
        ordered_ids: Sequence[AssignmentId],
        timeslot_id: Optional[int] = None,
    ) -> GestureResult:
        position = normalize_position(position)
        bucket = self.catalog.bucket(position, self.catalog.resolve_timeslot(position, timeslot_id))
        cell = {record.id: record for record in self.store.query(date_value, position, bucket)}
        resolved = [self.mutations.resolve(assignment_id) for assignment_id in ordered_ids]
        unknown = [assignment_id for assignment_id in resolved if assignment_id not in cell]
        if unknown:
            raise ValueError(f"Assignments {unknown} are not in this cell.")
        result = GestureResult()
        with self.undo_log.gesture("reorder"):
            for index, assignment_id in enumerate(resolved):
                if cell[assignment_id].order == index:
                    continue
                updated = await self.mutations.update(assignment_id, {"order": index})
                if updated is not None:
                    result.updated.append(updated)
        if not result.updated:
            result.status = SKIPPED
        return result

    async def assign_week(
        self,
        person_id: int,
        position: str,
        week_start: datetime.date,
        timeslot_id: Optional[int] = None,
    ) -> BatchResult:
        """Assign Monday to Friday, skipping days that would need an override."""
        position = normalize_position(position)
        batch = BatchResult()
        with self.undo_log.gesture("assign_week"):
            for day in weekdays_of(week_start):
                slots = [
                    slot
                    for slot in self._slots_for(position, timeslot_id, False)
                    if not self._holds_bucket(person_id, day, position, slot)
                ]
                if not slots:
                    batch.outcomes.append(DayOutcome(day, DUPLICATE))
                    continue
                validation = self.validate(person_id, day, position, skip_limits=True)
                if not validation.can_proceed:
                    batch.outcomes.append(DayOutcome(day, BLOCKED, validation.blockers))
                    continue
                result = GestureResult(warnings=validation.warnings)
                await self._apply_assign(person_id, day, position, slots, "", result)
                batch.created.extend(result.created)
                batch.outcomes.append(DayOutcome(day, APPLIED, result.warnings))
        return batch

    async def apply_suggestions(self, candidates: Iterable[Dict[str, Any]]) -> BatchResult:
        """Run externally generated assignments through the normal validation path."""
        batch = BatchResult()
        with self.undo_log.gesture("suggestions"):
            for candidate in candidates:
                person_id = int(candidate["person_id"])
                day = coerce_date(candidate["date"])
                position = normalize_position(candidate.get("position"))
                slot = self.catalog.resolve_timeslot(position, candidate.get("timeslot_id"))
                if self._holds_bucket(person_id, day, position, slot):
                    batch.outcomes.append(DayOutcome(day, DUPLICATE))
                    continue
                validation = self.validate(person_id, day, position)
                if not validation.can_proceed:
                    batch.outcomes.append(DayOutcome(day, BLOCKED, validation.blockers))
                    continue
                result = GestureResult(warnings=validation.warnings)
                await self._apply_assign(person_id, day, position, [slot], "", result)
                batch.created.extend(result.created)
                batch.outcomes.append(DayOutcome(day, APPLIED, result.warnings))
        return batch

    async def _clear(self, targets: List[Assignment], label: str) -> GestureResult:
        ids: List[AssignmentId] = []
        for record in targets:
            ids.append(record.id)
            rest = self.cascader.find_rest_to_cleanup(record.person_id, record.date, record.position)
            if rest is not None:
                ids.append(rest.id)
        ids = list(dict.fromkeys(ids))
        if not ids:
            return GestureResult(status=SKIPPED)
        with self.undo_log.gesture(label):
            bulk: BulkResult = await self.mutations.bulk_delete(ids)
        return GestureResult(removed=bulk.succeeded, warnings=[error for _, error in bulk.failed])

    async def clear_week(self, week_start: datetime.date) -> GestureResult:
        days = days_of_week(week_start)
        targets = [r for r in self.store.between(days[0], days[-1]) if not is_absence(r.position)]
        return await self._clear(targets, "clear_week")

    async def clear_day(self, date_value: datetime.date) -> GestureResult:
        targets = [r for r in self.store.on_date(date_value) if not is_absence(r.position)]
        return await self._clear(targets, "clear_day")

    async def clear_row(
        self,
        position: str,
        week_start: datetime.date,
        timeslot_id: Optional[int] = None,
    ) -> GestureResult:
        position = normalize_position(position)
        days = days_of_week(week_start)
        targets = [r for r in self.store.between(days[0], days[-1]) if r.position == position]
        if timeslot_id is not None:
            bucket = self.catalog.bucket(position, timeslot_id)
            targets = [r for r in targets if self.store.bucket_of(r) == bucket]
        return await self._clear(targets, "clear_row")

    async def approve_wish(self, request_id: int, *, override: bool = False) -> GestureResult:
        request = self.wishes.get(request_id)
        if request is None:
            return GestureResult(status=NOT_FOUND)
        if request.type != "service" or not request.position:
            await self.wishes.set_status(request_id, "approved")
            return GestureResult(status=APPLIED)
        return await self.assign(request.person_id, request.date, request.position, override=override)

    async def reject_wish(self, request_id: int, comment: str = "") -> PendingRequest:
        return await self.wishes.set_status(request_id, "rejected", comment)

    async def undo(self) -> Optional[UndoGroup]:
        return await self.mutations.undo()

    def available_persons(self, date_value: datetime.date) -> List[Person]:
        """People who are neither absent nor on an availability-affecting workplace."""
        busy = set()
        for record in self.store.on_date(date_value):
            workplace = self.catalog.workplace(record.position)
            if is_absence(record.position) or (workplace and workplace.affects_availability):
                busy.add(record.person_id)
        return [person for person in self.catalog.sorted_persons() if person.id not in busy]

    def roster_report(self) -> Dict[str, Any]:
        return validate_roster(self.store, self.catalog, self.settings)
