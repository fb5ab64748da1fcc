from __future__ import annotations

import datetime
import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from occupancy import OccupancyStore
from policy import RuleSettings
from positions import CATEGORY_DUTY, CATEGORY_ROTATION, is_absence, role_in
from roster import Assignment, AssignmentId, RosterCatalog, WorkSlotDefinition, coerce_date
from workdays import is_weekend

BLOCKER = "blocker"
WARNING = "warning"
# Rules whose violations an override can leave behind in the roster.
OVERRIDABLE_RULES = ("absence_lock", "consecutive_days", "rotation_exclusivity")


@dataclass
class Finding:
    rule: str
    severity: str
    message: str
    assignment_id: Optional[AssignmentId] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule": self.rule,
            "severity": self.severity,
            "message": self.message,
            "assignment_id": self.assignment_id,
        }


@dataclass
class ValidationResult:
    findings: List[Finding] = field(default_factory=list)

    @property
    def blockers(self) -> List[str]:
        return [finding.message for finding in self.findings if finding.severity == BLOCKER]

    @property
    def warnings(self) -> List[str]:
        return [finding.message for finding in self.findings if finding.severity == WARNING]

    @property
    def can_proceed(self) -> bool:
        return not self.blockers

    def suppress_blockers(self) -> "ValidationResult":
        """Return a copy where blockers are reported as warnings (override path)."""
        return ValidationResult(
            [Finding(f.rule, WARNING, f.message, f.assignment_id) for f in self.findings]
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "can_proceed": self.can_proceed,
            "blockers": self.blockers,
            "warnings": self.warnings,
            "findings": [finding.to_dict() for finding in self.findings],
        }


@dataclass
class _Candidate:
    person_id: int
    date: datetime.date
    position: str
    exclude_id: Optional[AssignmentId]
    workplace: Optional[WorkSlotDefinition]
    same_day: List[Assignment]


@dataclass(frozen=True)
class Rule:
    name: str
    check: Callable[["ShiftValidator", _Candidate], List[Finding]]
    limit_rule: bool = False


class ShiftValidator:
    """Evaluates a proposed assignment against the rule table.

    The validator only reads the occupancy store; it never changes it. Every
    rule runs for every call so the caller sees all blockers and warnings at
    once.
    """

    def __init__(self, store: OccupancyStore, catalog: RosterCatalog, settings: Optional[RuleSettings] = None) -> None:
        self.store = store
        self.catalog = catalog
        self.settings = settings or RuleSettings()

    def validate(
        self,
        person_id: int,
        date_value: datetime.date,
        position: str,
        *,
        exclude_assignment_id: Optional[AssignmentId] = None,
        skip_limits: bool = False,
    ) -> ValidationResult:
        candidate = self._candidate(person_id, date_value, position, exclude_assignment_id)
        findings = self._evaluate(candidate, skip_limits=skip_limits)
        if self._already_in_place(candidate):
            findings = [
                Finding(f.rule, WARNING, f.message, f.assignment_id) if f.severity == BLOCKER else f
                for f in findings
            ]
        return ValidationResult(findings)

    def _candidate(
        self,
        person_id: int,
        date_value: datetime.date,
        position: str,
        exclude_id: Optional[AssignmentId],
    ) -> _Candidate:
        date_value = coerce_date(date_value)
        same_day = [
            record
            for record in self.store.for_person(person_id, date_value)
            if exclude_id is None or record.id != exclude_id
        ]
        return _Candidate(
            person_id=person_id,
            date=date_value,
            position=position,
            exclude_id=exclude_id,
            workplace=self.catalog.workplace(position),
            same_day=same_day,
        )

    def _evaluate(self, candidate: _Candidate, *, skip_limits: bool = False) -> List[Finding]:
        findings: List[Finding] = []
        for rule in RULE_TABLE:
            if skip_limits and rule.limit_rule:
                continue
            findings.extend(rule.check(self, candidate))
        return findings

    def _already_in_place(self, candidate: _Candidate) -> bool:
        if candidate.exclude_id is None:
            return False
        existing = self.store.get(candidate.exclude_id)
        return (
            existing is not None
            and existing.person_id == candidate.person_id
            and existing.date == candidate.date
            and existing.position == candidate.position
        )

    def _check_person(self, candidate: _Candidate) -> List[Finding]:
        if self.catalog.person(candidate.person_id) is None:
            return [Finding("unknown_person", BLOCKER, "Person not found.")]
        return []

    def _check_absence_lock(self, candidate: _Candidate) -> List[Finding]:
        rules = self.settings.absence_blocking
        for record in candidate.same_day:
            if rules.get(record.position) is True and record.position != candidate.position:
                return [
                    Finding(
                        "absence_lock",
                        BLOCKER,
                        f'Already registered as "{record.position}" on this day (blocked).',
                        record.id,
                    )
                ]
        return []

    def _check_soft_absence(self, candidate: _Candidate) -> List[Finding]:
        rules = self.settings.absence_blocking
        for record in candidate.same_day:
            if rules.get(record.position) is False and record.position != candidate.position:
                return [Finding("soft_absence", WARNING, f'Conflict: person is "{record.position}".', record.id)]
        return []

    def _check_consecutive_days(self, candidate: _Candidate) -> List[Finding]:
        workplace = candidate.workplace
        if not workplace or workplace.allows_consecutive_days:
            return []
        neighbours = (
            candidate.date - datetime.timedelta(days=1),
            candidate.date + datetime.timedelta(days=1),
        )
        for day in neighbours:
            for record in self.store.for_person(candidate.person_id, day):
                if record.position == candidate.position and record.id != candidate.exclude_id:
                    return [
                        Finding(
                            "consecutive_days",
                            BLOCKER,
                            f'"{candidate.position}" is not allowed on consecutive days.',
                            record.id,
                        )
                    ]
        return []

    def _check_rotation_exclusivity(self, candidate: _Candidate) -> List[Finding]:
        workplace = candidate.workplace
        if not workplace:
            return []
        if workplace.category == CATEGORY_ROTATION:
            for record in candidate.same_day:
                held = self.catalog.workplace(record.position)
                if held and held.category == CATEGORY_DUTY and not held.rotation_concurrency:
                    return [
                        Finding(
                            "rotation_exclusivity",
                            BLOCKER,
                            f'Conflict: "{record.position}" blocks rotations on this day.',
                            record.id,
                        )
                    ]
        if workplace.category == CATEGORY_DUTY and not workplace.rotation_concurrency:
            for record in candidate.same_day:
                held = self.catalog.workplace(record.position)
                if held and held.category == CATEGORY_ROTATION:
                    return [
                        Finding(
                            "rotation_exclusivity",
                            BLOCKER,
                            f'Conflict: rotation "{record.position}" cannot be combined with this duty.',
                            record.id,
                        )
                    ]
        return []

    def _check_staffing_floor(self, candidate: _Candidate) -> List[Finding]:
        if not is_absence(candidate.position):
            return []
        settings = self.settings
        absent = {
            record.person_id
            for record in self.store.on_date(candidate.date)
            if is_absence(record.position) and record.id != candidate.exclude_id
        }
        absent.add(candidate.person_id)
        specialists = [p for p in self.catalog.persons if role_in(p.role, settings.specialist_roles)]
        assistants = [p for p in self.catalog.persons if role_in(p.role, settings.assistant_roles)]
        present_specialists = sum(1 for p in specialists if p.id not in absent)
        present_assistants = sum(1 for p in assistants if p.id not in absent)
        parts: List[str] = []
        if present_specialists < settings.min_specialists:
            parts.append(f"only {present_specialists} specialists present (min: {settings.min_specialists})")
        if present_assistants < settings.min_assistants:
            parts.append(f"only {present_assistants} residents present (min: {settings.min_assistants})")
        if not parts:
            return []
        return [Finding("staffing_floor", WARNING, "Minimum staffing not met: " + ", ".join(parts))]

    def _check_monthly_limits(self, candidate: _Candidate) -> List[Finding]:
        workplace = candidate.workplace
        if not workplace or workplace.category != CATEGORY_DUTY:
            return []
        duties = self.catalog.duty_positions()
        foreground = duties[0] if duties else None
        background = duties[1] if len(duties) > 1 else None
        is_foreground = candidate.position == foreground
        is_background = candidate.position == background
        counts = defaultdict(int)
        for record in self.store.in_month(candidate.person_id, candidate.date.year, candidate.date.month):
            if record.id == candidate.exclude_id:
                continue
            if record.position == foreground:
                counts["foreground"] += 1
                if is_weekend(record.date):
                    counts["weekend"] += 1
            if record.position == background:
                counts["background"] += 1
        weekend_duty = is_foreground and is_weekend(candidate.date)
        if is_foreground:
            counts["foreground"] += 1
        if is_background:
            counts["background"] += 1
        if weekend_duty:
            counts["weekend"] += 1
        fte = self.catalog.fte_for(candidate.person_id, candidate.date)
        limit_foreground = _round_half_up(self.settings.limit_foreground * fte)
        limit_background = _round_half_up(self.settings.limit_background * fte)
        parts: List[str] = []
        if is_foreground and counts["foreground"] > limit_foreground:
            parts.append(f"{counts['foreground']}. {foreground} (limit: {limit_foreground})")
        if is_background and counts["background"] > limit_background:
            parts.append(f"{counts['background']}. {background} (limit: {limit_background})")
        if weekend_duty and counts["weekend"] > self.settings.limit_weekend:
            parts.append(f"{counts['weekend']}. weekend duty (limit: {self.settings.limit_weekend})")
        if not parts:
            return []
        return [Finding("monthly_limits", WARNING, "Duty limit exceeded: " + ", ".join(parts))]


RULE_TABLE: Tuple[Rule, ...] = (
    Rule("unknown_person", ShiftValidator._check_person),
    Rule("absence_lock", ShiftValidator._check_absence_lock),
    Rule("soft_absence", ShiftValidator._check_soft_absence),
    Rule("consecutive_days", ShiftValidator._check_consecutive_days),
    Rule("rotation_exclusivity", ShiftValidator._check_rotation_exclusivity),
    Rule("staffing_floor", ShiftValidator._check_staffing_floor),
    Rule("monthly_limits", ShiftValidator._check_monthly_limits, limit_rule=True),
)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def validate_roster(
    store: OccupancyStore,
    catalog: RosterCatalog,
    settings: Optional[RuleSettings] = None,
) -> Dict[str, Any]:
    """Return invariant findings for every assignment in the store's window."""
    records = store.all()
    issues: List[Dict[str, Any]] = []
    warnings: List[Dict[str, Any]] = []
    issues.extend(_absence_exclusivity_issues(records))
    issues.extend(_duplicate_issues(store, records))
    issues.extend(_exclusive_cell_issues(store, catalog, records))
    issues.extend(_order_issues(records))
    warnings.extend(_overridden_rule_warnings(store, catalog, settings, records))
    checks = _build_validation_checklist(issues=issues)
    return {
        "window": {
            "start": store.start.isoformat() if store.start else None,
            "end": store.end.isoformat() if store.end else None,
        },
        "assignments": len(records),
        "checks": checks,
        "issues": issues,
        "warnings": warnings,
    }


def _absence_exclusivity_issues(records: List[Assignment]) -> List[Dict[str, Any]]:
    grouped: Dict[Tuple[datetime.date, int], List[Assignment]] = defaultdict(list)
    for record in records:
        if is_absence(record.position):
            grouped[(record.date, record.person_id)].append(record)
    issues: List[Dict[str, Any]] = []
    for (day, person_id), entries in sorted(grouped.items(), key=lambda item: (item[0][0], item[0][1])):
        if len(entries) > 1:
            issues.append(
                {
                    "type": "absence_conflict",
                    "severity": "error",
                    "date": day.isoformat(),
                    "person_id": person_id,
                    "positions": sorted(entry.position for entry in entries),
                    "message": f"Person {person_id} has {len(entries)} absences on {day.isoformat()}",
                }
            )
    return issues


def _duplicate_issues(store: OccupancyStore, records: List[Assignment]) -> List[Dict[str, Any]]:
    seen: Dict[Tuple[Any, ...], int] = defaultdict(int)
    for record in records:
        seen[(record.date, record.position, store.bucket_of(record), record.person_id)] += 1
    issues: List[Dict[str, Any]] = []
    for (day, position, bucket, person_id), count in seen.items():
        if count > 1:
            issues.append(
                {
                    "type": "duplicate_assignment",
                    "severity": "error",
                    "date": day.isoformat(),
                    "position": position,
                    "bucket": bucket,
                    "person_id": person_id,
                    "message": f"Person {person_id} appears {count} times in {position} on {day.isoformat()}",
                }
            )
    return issues


def _exclusive_cell_issues(
    store: OccupancyStore,
    catalog: RosterCatalog,
    records: List[Assignment],
) -> List[Dict[str, Any]]:
    cells: Dict[Tuple[Any, ...], set] = defaultdict(set)
    for record in records:
        workplace = catalog.workplace(record.position)
        if workplace and workplace.exclusive:
            cells[(record.date, record.position, store.bucket_of(record))].add(record.person_id)
    issues: List[Dict[str, Any]] = []
    for (day, position, bucket), people in cells.items():
        if len(people) > 1:
            issues.append(
                {
                    "type": "exclusive_cell",
                    "severity": "error",
                    "date": day.isoformat(),
                    "position": position,
                    "bucket": bucket,
                    "person_ids": sorted(people),
                    "message": f"{position} on {day.isoformat()} is held by {len(people)} people",
                }
            )
    return issues


def _order_issues(records: List[Assignment]) -> List[Dict[str, Any]]:
    return [
        {
            "type": "order",
            "severity": "error",
            "assignment_id": record.id,
            "message": f"Assignment {record.id} has negative order {record.order}",
        }
        for record in records
        if record.order < 0
    ]


def _overridden_rule_warnings(
    store: OccupancyStore,
    catalog: RosterCatalog,
    settings: Optional[RuleSettings],
    records: List[Assignment],
) -> List[Dict[str, Any]]:
    validator = ShiftValidator(store, catalog, settings)
    warnings: List[Dict[str, Any]] = []
    for record in records:
        candidate = validator._candidate(record.person_id, record.date, record.position, record.id)
        for finding in validator._evaluate(candidate, skip_limits=True):
            if finding.severity == BLOCKER and finding.rule in OVERRIDABLE_RULES:
                warnings.append(
                    {
                        "type": finding.rule,
                        "severity": "warning",
                        "assignment_id": record.id,
                        "date": record.date.isoformat(),
                        "message": finding.message,
                    }
                )
    return warnings


def _build_validation_checklist(*, issues: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Produce a concise, UI-friendly checklist:
    - `status`: ok|fail
    - `label`: human readable prompt
    - `details`: optional context for failures
    """
    checks: List[Dict[str, Any]] = []

    def summarize(items: List[Dict[str, Any]], *, limit: int = 5) -> str:
        parts = [str(entry.get("message") or "").strip() for entry in items[:limit]]
        parts = [part for part in parts if part]
        if len(items) > limit:
            parts.append(f"+{len(items) - limit} more")
        return "; ".join(parts)

    def add_check(label: str, type_name: str) -> None:
        matches = [issue for issue in issues if issue.get("type") == type_name]
        checks.append(
            {
                "label": label,
                "status": "ok" if not matches else "fail",
                "details": summarize(matches) if matches else "",
            }
        )

    add_check("One absence per person and day?", "absence_conflict")
    add_check("No person twice in the same cell?", "duplicate_assignment")
    add_check("Exclusive duties held by one person?", "exclusive_cell")
    add_check("Display order valid?", "order")
    return checks
