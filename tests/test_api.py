from __future__ import annotations

import inspect
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import api  # noqa: E402
from planner import RosterPlanner  # noqa: E402
from policy import ensure_default_policy  # noqa: E402
from storage import SqlShiftStore  # noqa: E402

from roster_builders import (  # noqa: E402
    ADA,
    BEN,
    FRIDAY,
    MONDAY,
    NEXT_MONDAY,
    NEXT_TUESDAY,
    TUESDAY,
    build_catalog,
    memory_session_factory,
    seed,
)


@pytest.fixture()
def roster_client():
    engine, factory = memory_session_factory()
    ensure_default_policy(factory)
    planner = RosterPlanner(build_catalog(), SqlShiftStore(factory, actor="api"))
    planner.mutations.notifications = False

    def override_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    api.app.state.planner = planner
    api.app.dependency_overrides[api.get_db] = override_db
    api.app.dependency_overrides[api.get_policy_db] = override_db
    try:
        yield TestClient(api.app), planner, factory
    finally:
        api.app.dependency_overrides.clear()
        api.app.state.planner = None
        engine.dispose()


def test_health(roster_client):
    client, _, _ = roster_client

    assert client.get("/health").json() == {"status": "ok"}


def test_missing_planner_returns_503(roster_client):
    client, _, _ = roster_client
    api.app.state.planner = None

    response = client.get("/api/v1/roster/report")

    assert response.status_code == 503


def test_assign_duty_returns_cascade(roster_client):
    client, planner, _ = roster_client

    response = client.post(
        "/api/v1/assignments",
        json={"person_id": ADA, "date": MONDAY.isoformat(), "position": "CT"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "applied"
    assert body["cascade_date"] == TUESDAY.isoformat()
    assert [entry["position"] for entry in body["created"]] == ["CT", "Free"]
    assert len(planner.store) == 2


def test_blocked_assignment_then_confirm(roster_client):
    client, planner, factory = roster_client
    seed(factory, BEN, MONDAY, "ExclusiveDuty")
    client.get("/api/v1/roster", params={"start": MONDAY.isoformat(), "end": TUESDAY.isoformat()})

    held = client.post(
        "/api/v1/assignments",
        json={"person_id": BEN, "date": MONDAY.isoformat(), "position": "MRI"},
    ).json()
    assert held["status"] == "pending_override"
    assert client.get("/api/v1/override").json()["state"] == "pending"

    confirmed = client.post("/api/v1/override/confirm", json={"actor": "chief"})

    assert confirmed.status_code == 200
    assert confirmed.json()["status"] == "applied"
    assert client.post("/api/v1/override/confirm", json={}).status_code == 409


def test_roster_window_lists_assignments(roster_client):
    client, _, factory = roster_client
    seed(factory, ADA, MONDAY, "MRI")

    response = client.get("/api/v1/roster", params={"start": MONDAY.isoformat(), "end": TUESDAY.isoformat()})

    assert response.status_code == 200
    assert [entry["position"] for entry in response.json()["assignments"]] == ["MRI"]


def test_roster_window_rejects_bad_dates(roster_client):
    client, _, _ = roster_client

    assert client.get("/api/v1/roster", params={"start": "soon", "end": "later"}).status_code == 400
    assert client.get(
        "/api/v1/roster", params={"start": TUESDAY.isoformat(), "end": MONDAY.isoformat()}
    ).status_code == 400


def test_validate_endpoint(roster_client):
    client, _, factory = roster_client
    seed(factory, ADA, MONDAY, "Vacation")
    client.get("/api/v1/roster", params={"start": MONDAY.isoformat(), "end": TUESDAY.isoformat()})

    body = client.post(
        "/api/v1/validate",
        json={"person_id": ADA, "date": MONDAY.isoformat(), "position": "MRI"},
    ).json()

    assert body["can_proceed"] is False
    assert len(body["blockers"]) == 1


def test_missing_fields_are_rejected(roster_client):
    client, _, _ = roster_client

    response = client.post("/api/v1/assignments", json={"person_id": ADA})

    assert response.status_code == 400


def test_delete_unknown_assignment_is_404(roster_client):
    client, _, _ = roster_client

    assert client.delete("/api/v1/assignments/999").status_code == 404


def test_undo_reverts_last_gesture(roster_client):
    client, planner, _ = roster_client
    client.post("/api/v1/assignments", json={"person_id": ADA, "date": MONDAY.isoformat(), "position": "CT"})

    body = client.post("/api/v1/undo").json()

    assert body["undone"] is True
    assert body["remaining"] == 0
    assert len(planner.store) == 0
    assert client.post("/api/v1/undo").json() == {"undone": False, "remaining": 0}


def test_reorder_with_foreign_id_is_400(roster_client):
    client, _, _ = roster_client

    response = client.post(
        "/api/v1/cells/reorder",
        json={"date": MONDAY.isoformat(), "position": "MRI", "ordered_ids": [123]},
    )

    assert response.status_code == 400


def test_week_assignment_reports_counts(roster_client):
    client, _, _ = roster_client

    body = client.post(f"/api/v1/weeks/{MONDAY.isoformat()}/assign", json={"person_id": BEN, "position": "MRI"}).json()

    assert body["counts"]["applied"] == 5


def test_policy_update_reaches_planner(roster_client):
    client, planner, _ = roster_client

    response = client.put(
        "/api/v1/policy/active",
        json={"name": "Ward B", "params": {"limits": {"foreground": 2}}, "actor": "chief"},
    )

    assert response.status_code == 200
    assert planner.settings.limit_foreground == 2
    active = client.get("/api/v1/policy/active").json()
    assert active["name"] == "Ward B"
    assert active["lastEditedBy"] == "chief"


def test_planner_endpoints_are_coroutines():
    for endpoint in (
        api.roster_cell,
        api.roster_report,
        api.validate_assignment,
        api.pending_override,
        api.cancel_override,
        api.resolve_cascade,
        api.set_active_policy,
        api.add_holiday,
        api.delete_holiday,
    ):
        assert inspect.iscoroutinefunction(endpoint), endpoint.__name__


def test_resolve_cascade_joins_the_duty_gesture(roster_client):
    client, planner, factory = roster_client
    mri = seed(factory, ADA, TUESDAY, "MRI")
    client.get("/api/v1/roster", params={"start": MONDAY.isoformat(), "end": FRIDAY.isoformat()})
    conflict = client.post(
        "/api/v1/assignments",
        json={"person_id": ADA, "date": MONDAY.isoformat(), "position": "CT"},
    ).json()["cascade_conflict"]
    client.post("/api/v1/assignments", json={"person_id": BEN, "date": FRIDAY.isoformat(), "position": "MRI"})

    response = client.post(
        "/api/v1/cascade/resolve",
        json={
            "person_id": ADA,
            "date": conflict["date"],
            "existing_id": mri.id,
            "origin_id": conflict["origin_id"],
        },
    )

    assert response.status_code == 200
    assert [entry["position"] for entry in response.json()["updated"]] == ["Free"]
    client.post("/api/v1/undo")
    assert [r.position for r in planner.store.for_person(ADA, MONDAY)] == []
    assert [r.position for r in planner.store.for_person(ADA, TUESDAY)] == ["MRI"]
    assert [r.position for r in planner.store.for_person(BEN, FRIDAY)] == ["MRI"]


def test_resolve_cascade_requires_origin(roster_client):
    client, _, factory = roster_client
    mri = seed(factory, ADA, TUESDAY, "MRI")

    response = client.post(
        "/api/v1/cascade/resolve",
        json={"person_id": ADA, "date": TUESDAY.isoformat(), "existing_id": mri.id},
    )

    assert response.status_code == 400


def test_holiday_moves_rest_day(roster_client):
    client, planner, _ = roster_client

    added = client.post(
        "/api/v1/holidays",
        json={"date": NEXT_MONDAY.isoformat(), "name": "Easter Monday", "kind": "public"},
    )
    assert added.status_code == 200
    assert planner.calendar.is_holiday(NEXT_MONDAY)

    body = client.post(
        "/api/v1/assignments",
        json={"person_id": ADA, "date": FRIDAY.isoformat(), "position": "CT"},
    ).json()

    assert body["cascade_date"] == NEXT_TUESDAY.isoformat()
    listed = client.get("/api/v1/holidays").json()["holidays"]
    assert [(entry["date"], entry["kind"]) for entry in listed] == [(NEXT_MONDAY.isoformat(), "public")]


def test_removing_public_holiday_makes_it_a_workday(roster_client):
    client, planner, _ = roster_client
    client.post("/api/v1/holidays", json={"date": NEXT_MONDAY.isoformat(), "kind": "public"})

    response = client.delete(f"/api/v1/holidays/{NEXT_MONDAY.isoformat()}")

    assert response.status_code == 200
    assert response.json()["holiday"] is False
    assert not planner.calendar.is_holiday(NEXT_MONDAY)
    assert client.delete(f"/api/v1/holidays/{TUESDAY.isoformat()}").status_code == 404


def test_unknown_holiday_kind_is_400(roster_client):
    client, _, _ = roster_client

    response = client.post("/api/v1/holidays", json={"date": MONDAY.isoformat(), "kind": "school"})

    assert response.status_code == 400
