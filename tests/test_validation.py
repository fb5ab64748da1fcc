from __future__ import annotations

import copy
import datetime
import sys
import unittest
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from occupancy import OccupancyStore  # noqa: E402
from policy import RuleSettings  # noqa: E402
from validation import ShiftValidator, validate_roster  # noqa: E402

from roster_builders import (  # noqa: E402
    ADA,
    BEN,
    CLEO,
    DAN,
    EVE,
    FINN,
    MONDAY,
    TUESDAY,
    WEDNESDAY,
    build_catalog,
    record,
)


class ShiftValidatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.catalog = build_catalog()
        self.store = OccupancyStore(self.catalog)
        self.validator = ShiftValidator(self.store, self.catalog, RuleSettings())

    def _load(self, *records) -> None:
        self.store.load(records)

    def test_blocking_absence_blocks_other_positions(self) -> None:
        self._load(record(1, ADA, MONDAY, "Vacation"))
        result = self.validator.validate(ADA, MONDAY, "MRI")

        self.assertFalse(result.can_proceed)
        self.assertEqual(len(result.blockers), 1)
        self.assertIn("Vacation", result.blockers[0])

    def test_same_absence_is_not_a_lock(self) -> None:
        self._load(record(1, ADA, MONDAY, "Sick"))
        result = self.validator.validate(ADA, MONDAY, "Sick")

        self.assertEqual(result.blockers, [])

    def test_travel_only_warns(self) -> None:
        self._load(record(1, ADA, MONDAY, "Travel"))
        result = self.validator.validate(ADA, MONDAY, "MRI")

        self.assertTrue(result.can_proceed)
        self.assertTrue(any("Travel" in warning for warning in result.warnings))

    def test_blocking_rules_come_from_settings(self) -> None:
        settings = RuleSettings(absence_blocking={"Vacation": False})
        validator = ShiftValidator(self.store, self.catalog, settings)
        self._load(record(1, ADA, MONDAY, "Vacation"))

        result = validator.validate(ADA, MONDAY, "MRI")

        self.assertTrue(result.can_proceed)
        self.assertEqual(len(result.warnings), 1)

    def test_consecutive_day_ban_checks_both_neighbours(self) -> None:
        self._load(record(1, ADA, MONDAY, "CT"))
        before = self.validator.validate(ADA, TUESDAY, "CT")
        self._load(record(1, ADA, WEDNESDAY, "CT"))
        after = self.validator.validate(ADA, TUESDAY, "CT")

        self.assertFalse(before.can_proceed)
        self.assertFalse(after.can_proceed)
        self.assertIn("consecutive", before.blockers[0])

    def test_consecutive_days_allowed_by_default(self) -> None:
        self._load(record(1, ADA, MONDAY, "Background"))
        result = self.validator.validate(ADA, TUESDAY, "Background")

        self.assertEqual(result.blockers, [])

    def test_rotation_blocked_by_exclusive_duty(self) -> None:
        self._load(record(1, BEN, MONDAY, "ExclusiveDuty"))
        result = self.validator.validate(BEN, MONDAY, "MRI")

        self.assertFalse(result.can_proceed)
        self.assertIn("ExclusiveDuty", result.blockers[0])

    def test_exclusive_duty_blocked_by_rotation(self) -> None:
        self._load(record(1, BEN, MONDAY, "MRI"))
        result = self.validator.validate(BEN, MONDAY, "ExclusiveDuty")

        self.assertFalse(result.can_proceed)
        self.assertIn("MRI", result.blockers[0])

    def test_duty_with_unset_concurrency_allows_rotation(self) -> None:
        self._load(record(1, BEN, MONDAY, "Background"))
        result = self.validator.validate(BEN, MONDAY, "MRI")

        self.assertTrue(result.can_proceed)

    def test_staffing_floor_warns_when_residents_drop(self) -> None:
        self._load(record(1, BEN, MONDAY, "Vacation"))
        result = self.validator.validate(DAN, MONDAY, "Sick")

        self.assertTrue(result.can_proceed)
        self.assertTrue(any("residents" in warning for warning in result.warnings))

    def test_staffing_floor_ignores_workplace_assignments(self) -> None:
        result = self.validator.validate(BEN, MONDAY, "MRI")

        self.assertFalse(any("Minimum staffing" in warning for warning in result.warnings))

    def test_monthly_foreground_limit_scaled_by_fte(self) -> None:
        # Dan works half time, so the foreground ceiling of 4 becomes 2.
        self._load(
            record(1, DAN, datetime.date(2024, 4, 1), "CT"),
            record(2, DAN, datetime.date(2024, 4, 3), "CT"),
        )
        result = self.validator.validate(DAN, datetime.date(2024, 4, 10), "CT")

        self.assertTrue(result.can_proceed)
        self.assertTrue(any("limit: 2" in warning for warning in result.warnings))

    def test_weekend_limit_counts_foreground_only(self) -> None:
        saturday = datetime.date(2024, 4, 6)
        self._load(record(1, ADA, saturday, "CT"))
        foreground = self.validator.validate(ADA, datetime.date(2024, 4, 13), "CT")
        background = self.validator.validate(ADA, datetime.date(2024, 4, 13), "Background")

        self.assertTrue(any("weekend" in warning for warning in foreground.warnings))
        self.assertFalse(any("weekend" in warning for warning in background.warnings))

    def test_skip_limits_drops_ceiling_warnings(self) -> None:
        self._load(*[record(i, DAN, datetime.date(2024, 4, i * 2), "CT") for i in range(1, 4)])
        result = self.validator.validate(DAN, datetime.date(2024, 4, 20), "CT", skip_limits=True)

        self.assertFalse(any("Duty limit" in warning for warning in result.warnings))

    def test_unknown_person_is_blocked(self) -> None:
        result = self.validator.validate(99, MONDAY, "MRI")

        self.assertEqual(result.blockers, ["Person not found."])

    def test_every_rule_reports(self) -> None:
        self._load(
            record(1, BEN, MONDAY, "Vacation"),
            record(2, BEN, TUESDAY, "CT"),
        )
        result = self.validator.validate(BEN, MONDAY, "CT")

        rules = {finding.rule for finding in result.findings}
        self.assertIn("absence_lock", rules)
        self.assertIn("consecutive_days", rules)

    def test_existing_assignment_reports_prior_violation_as_warning(self) -> None:
        self._load(
            record(1, ADA, MONDAY, "CT"),
            record(2, ADA, TUESDAY, "CT"),
        )
        result = self.validator.validate(ADA, TUESDAY, "CT", exclude_assignment_id=2)

        self.assertEqual(result.blockers, [])
        self.assertTrue(any("consecutive" in warning for warning in result.warnings))

    def test_validation_does_not_mutate_store(self) -> None:
        self._load(record(1, ADA, MONDAY, "Vacation"), record(2, BEN, MONDAY, "CT"))
        before = copy.deepcopy(self.store.snapshot())

        self.validator.validate(ADA, MONDAY, "CT")
        self.validator.validate(CLEO, MONDAY, "Sick")

        self.assertEqual(self.store.snapshot(), before)


class RosterReportTests(unittest.TestCase):
    def setUp(self) -> None:
        self.catalog = build_catalog()
        self.store = OccupancyStore(self.catalog, MONDAY, WEDNESDAY)

    def test_clean_roster_passes_every_check(self) -> None:
        self.store.load([record(1, ADA, MONDAY, "CT"), record(2, BEN, MONDAY, "MRI")])
        report = validate_roster(self.store, self.catalog)

        self.assertEqual(report["issues"], [])
        self.assertTrue(all(check["status"] == "ok" for check in report["checks"]))

    def test_reports_invariant_breaks(self) -> None:
        self.store.load(
            [
                record(1, ADA, MONDAY, "Sick"),
                record(2, ADA, MONDAY, "Vacation"),
                record(3, BEN, MONDAY, "MRI"),
                record(4, BEN, MONDAY, "MRI"),
                record(5, CLEO, MONDAY, "CT"),
                record(6, EVE, MONDAY, "CT"),
            ]
        )
        report = validate_roster(self.store, self.catalog)
        types = {issue["type"] for issue in report["issues"]}

        self.assertEqual(types, {"absence_conflict", "duplicate_assignment", "exclusive_cell"})
        failed = [check["label"] for check in report["checks"] if check["status"] == "fail"]
        self.assertEqual(len(failed), 3)

    def test_overridden_violations_show_as_warnings(self) -> None:
        self.store.load([record(1, FINN, MONDAY, "CT"), record(2, FINN, TUESDAY, "CT")])
        report = validate_roster(self.store, self.catalog)

        self.assertEqual(report["issues"], [])
        self.assertEqual({warning["type"] for warning in report["warnings"]}, {"consecutive_days"})

    def test_records_outside_window_are_ignored(self) -> None:
        self.store.load([record(1, ADA, MONDAY, "CT"), record(2, ADA, datetime.date(2024, 5, 1), "CT")])

        self.assertEqual(len(self.store.all()), 1)
        self.assertEqual(validate_roster(self.store, self.catalog)["assignments"], 1)


if __name__ == "__main__":
    unittest.main()
