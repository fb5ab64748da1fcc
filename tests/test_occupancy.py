from __future__ import annotations

import datetime
import sys
import unittest
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from occupancy import OccupancyStore  # noqa: E402
from roster import UNASSIGNED_BUCKET, RosterCatalog, sort_cell  # noqa: E402

from roster_builders import (  # noqa: E402
    ADA,
    ANGIO_SLOT,
    BEN,
    CLEO,
    MONDAY,
    SONO_EARLY,
    SONO_LATE,
    TUESDAY,
    build_catalog,
    record,
)


class OccupancyStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.catalog = build_catalog()
        self.store = OccupancyStore(self.catalog, MONDAY, MONDAY + datetime.timedelta(days=6))

    def test_query_orders_by_order_then_id(self) -> None:
        self.store.load(
            [
                record(5, ADA, MONDAY, "MRI", order=1),
                record(3, BEN, MONDAY, "MRI", order=1),
                record(9, CLEO, MONDAY, "MRI", order=0),
            ]
        )
        self.assertEqual([r.id for r in self.store.query(MONDAY, "MRI")], [9, 3, 5])

    def test_integer_ids_sort_numerically(self) -> None:
        cell = sort_cell([record(10, ADA, MONDAY, "MRI"), record(9, BEN, MONDAY, "MRI")])

        self.assertEqual([r.id for r in cell], [9, 10])

    def test_query_outside_window_is_empty(self) -> None:
        self.assertEqual(self.store.query(MONDAY - datetime.timedelta(days=1), "MRI"), [])

    def test_multi_slot_workplace_buckets_by_slot(self) -> None:
        self.store.load(
            [
                record(1, ADA, MONDAY, "Sono", timeslot_id=SONO_EARLY),
                record(2, BEN, MONDAY, "Sono", timeslot_id=SONO_LATE),
                record(3, CLEO, MONDAY, "Sono"),
            ]
        )

        self.assertEqual([r.id for r in self.store.query(MONDAY, "Sono", SONO_EARLY)], [1])
        self.assertEqual([r.id for r in self.store.query(MONDAY, "Sono", UNASSIGNED_BUCKET)], [3])
        self.assertEqual(len(self.store.query(MONDAY, "Sono")), 3)

    def test_single_slot_workplace_has_one_bucket(self) -> None:
        self.store.load([record(1, ADA, MONDAY, "Angio", timeslot_id=ANGIO_SLOT), record(2, BEN, MONDAY, "Angio")])

        self.assertEqual(len(self.store.query(MONDAY, "Angio", None)), 2)

    def test_overlay_is_visible_to_readers(self) -> None:
        self.store.load([record(1, ADA, MONDAY, "MRI")])
        staged = self.store.stage_create(record(None, BEN, MONDAY, "MRI", order=1))
        self.store.stage_delete(1)

        self.assertTrue(staged.pending)
        self.assertEqual([r.id for r in self.store.query(MONDAY, "MRI")], [staged.id])
        self.assertNotIn(1, self.store)
        self.assertTrue(self.store.is_pending(1))

    def test_commit_replaces_temp_id(self) -> None:
        staged = self.store.stage_create(record(None, ADA, MONDAY, "CT"))
        self.store.commit(staged.id, staged.copy(id=42))

        self.assertIsNone(self.store.get(staged.id))
        self.assertEqual(self.store.get(42).position, "CT")
        self.assertFalse(self.store.is_pending(42))

    def test_discard_restores_confirmed_view(self) -> None:
        original = record(1, ADA, MONDAY, "CT")
        self.store.load([original])
        self.store.stage_update(1, original.copy(position="MRI"))
        self.assertEqual(self.store.get(1).position, "MRI")

        self.store.discard(1)

        self.assertEqual(self.store.get(1), original)

    def test_deleting_temp_entry_drops_it(self) -> None:
        staged = self.store.stage_create(record(None, ADA, MONDAY, "CT"))
        self.store.stage_delete(staged.id)

        self.assertEqual(len(self.store), 0)
        self.assertFalse(self.store.is_pending(staged.id))

    def test_next_order_follows_cell(self) -> None:
        self.store.load([record(1, ADA, MONDAY, "MRI", order=0), record(2, BEN, MONDAY, "MRI", order=4)])

        self.assertEqual(self.store.next_order(MONDAY, "MRI"), 5)
        self.assertEqual(self.store.next_order(TUESDAY, "MRI"), 0)

    def test_person_and_month_reads(self) -> None:
        self.store.load(
            [
                record(1, ADA, MONDAY, "CT"),
                record(2, ADA, TUESDAY, "MRI"),
                record(3, BEN, MONDAY, "MRI"),
            ]
        )

        self.assertEqual([r.id for r in self.store.for_person(ADA, MONDAY)], [1])
        self.assertEqual(len(self.store.in_month(ADA, 2024, 4)), 2)
        self.assertEqual(len(self.store.on_date(MONDAY)), 2)


class RosterCatalogTests(unittest.TestCase):
    def test_from_payload_normalizes_entries(self) -> None:
        catalog = RosterCatalog.from_payload(
            {
                "persons": [{"id": 1, "name": "Ada Lorenz", "role": "Specialist"}],
                "workplaces": [
                    {"id": 1, "name": "CT", "category": "Duty", "auto_rest_after": True},
                    {"id": 2, "name": "Sono", "category": "Rotation", "timeslots_enabled": True},
                ],
                "timeslots": [
                    {"id": 5, "workplace_id": 2, "label": "Early", "start_time": "07:00"},
                ],
            }
        )

        self.assertEqual(catalog.person(1).name, "Ada Lorenz")
        self.assertEqual(catalog.duty_positions(), ["CT"])
        self.assertTrue(catalog.workplace("CT").auto_rest_after)
        self.assertEqual(catalog.resolve_timeslot("Sono", None), 5)

    def test_fte_prefers_monthly_staffing_entry(self) -> None:
        catalog = build_catalog()
        catalog.staffing_entries[(ADA, 2024, 4)] = "0,75"

        self.assertEqual(catalog.fte_for(ADA, MONDAY), 0.75)
        self.assertEqual(catalog.fte_for(BEN, MONDAY), 1.0)


if __name__ == "__main__":
    unittest.main()
