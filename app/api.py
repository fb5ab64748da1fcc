"""FastAPI wrapper around one roster editing session.

The planner lives on ``app.state`` and is built in the lifespan hook from the
catalog tables, the active policy and the roster database. Every gesture
endpoint returns the gesture result so the front end can show blockers,
warnings and cascade conflicts.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict
import datetime
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

# Ensure flat absolute imports (e.g., "import database") still resolve.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database  # noqa: E402
from cascade import CascadeConflict  # noqa: E402
from database import (  # noqa: E402
    get_active_policy,
    init_database,
    list_holidays,
    load_catalog,
    load_holiday_calendar,
    record_audit_log,
    remove_holiday,
    set_holiday,
    upsert_policy,
)
from mutations import MutationFailed  # noqa: E402
from override import OverrideStateError  # noqa: E402
from planner import NOT_FOUND, GestureResult, RosterPlanner  # noqa: E402
from policy import RuleSettings, ensure_default_policy, load_active_policy  # noqa: E402
from storage import SqlShiftStore  # noqa: E402


def build_planner(actor: str = "api") -> RosterPlanner:
    catalog = load_catalog(database.CatalogSessionLocal())
    settings = RuleSettings.from_policy(load_active_policy(database.PolicySessionLocal))
    backend = SqlShiftStore(database.SessionLocal, actor=actor)
    with database.SessionLocal() as session:
        calendar = load_holiday_calendar(session)
    return RosterPlanner(catalog, backend, settings=settings, calendar=calendar)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_database()
    ensure_default_policy(database.PolicySessionLocal)
    app.state.planner = build_planner()
    yield


app = FastAPI(title="Duty Roster API", version="0.1", lifespan=lifespan)


def get_db():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_policy_db():
    db = database.PolicySessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_planner(request: Request) -> RosterPlanner:
    planner = getattr(request.app.state, "planner", None)
    if planner is None:
        raise HTTPException(status_code=503, detail="Roster session is not ready")
    return planner


def _parse_date(value: Any, field: str = "date") -> datetime.date:
    try:
        return datetime.date.fromisoformat(str(value))
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"{field} must be YYYY-MM-DD")


def _require(payload: Dict[str, Any], *keys: str) -> None:
    missing = [key for key in keys if payload.get(key) in (None, "")]
    if missing:
        raise HTTPException(status_code=400, detail=f"{', '.join(missing)} required")


def _optional_int(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"Expected an integer, got {value!r}")


def _assignment_id(value: str) -> Any:
    return int(value) if value.isdigit() else value


def _gesture_response(result: GestureResult) -> JSONResponse:
    if result.status == NOT_FOUND:
        raise HTTPException(status_code=404, detail="Assignment not found")
    return JSONResponse(content=jsonable_encoder(result.to_dict()))


def _audit(db: Session, actor: str, action: str, target: Optional[str], payload: Optional[Dict[str, Any]] = None) -> None:
    record_audit_log(db, user_id=actor, action=action, target_type="API", target_id=None, payload=dict(payload or {}, target=target))


async def _run(gesture):
    try:
        return await gesture
    except MutationFailed as exc:
        raise HTTPException(status_code=502, detail=exc.message) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/v1/roster")
async def roster_window(
    start: str = Query(...),
    end: str = Query(...),
    planner: RosterPlanner = Depends(get_planner),
) -> JSONResponse:
    start_date, end_date = _parse_date(start, "start"), _parse_date(end, "end")
    if end_date < start_date:
        raise HTTPException(status_code=400, detail="end must not be before start")
    await planner.load_window(start_date, end_date)
    payload = {
        "start": start_date.isoformat(),
        "end": end_date.isoformat(),
        "assignments": [record.to_dict() for record in planner.store.between(start_date, end_date)],
        "wishes": [asdict(request) for request in planner.wishes.all()],
    }
    return JSONResponse(content=jsonable_encoder(payload))


@app.get("/api/v1/roster/cell")
async def roster_cell(
    date: str = Query(...),
    position: str = Query(...),
    timeslot_id: Optional[int] = Query(None),
    planner: RosterPlanner = Depends(get_planner),
) -> JSONResponse:
    day = _parse_date(date)
    slot = planner.catalog.resolve_timeslot(position, timeslot_id)
    bucket = planner.catalog.bucket(position, slot)
    records = planner.store.query(day, position, bucket)
    return JSONResponse(content=jsonable_encoder({"assignments": [record.to_dict() for record in records]}))


@app.get("/api/v1/roster/report")
async def roster_report(planner: RosterPlanner = Depends(get_planner)) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder(planner.roster_report()))


@app.post("/api/v1/validate")
async def validate_assignment(payload: Dict[str, Any], planner: RosterPlanner = Depends(get_planner)) -> JSONResponse:
    _require(payload, "person_id", "date", "position")
    exclude = payload.get("exclude_assignment_id")
    result = planner.validate(
        int(payload["person_id"]),
        _parse_date(payload["date"]),
        payload["position"],
        exclude_assignment_id=_assignment_id(str(exclude)) if exclude not in (None, "") else None,
        skip_limits=bool(payload.get("skip_limits", False)),
    )
    return JSONResponse(content=jsonable_encoder(result.to_dict()))


@app.post("/api/v1/assignments")
async def create_assignment(payload: Dict[str, Any], planner: RosterPlanner = Depends(get_planner)) -> JSONResponse:
    _require(payload, "person_id", "date", "position")
    result = await _run(
        planner.assign(
            int(payload["person_id"]),
            _parse_date(payload["date"]),
            payload["position"],
            _optional_int(payload.get("timeslot_id")),
            all_timeslots=bool(payload.get("all_timeslots", False)),
            note=payload.get("note") or "",
        )
    )
    return _gesture_response(result)


@app.post("/api/v1/assignments/{assignment_id}/move")
async def move_assignment(
    assignment_id: str,
    payload: Dict[str, Any],
    planner: RosterPlanner = Depends(get_planner),
) -> JSONResponse:
    _require(payload, "date", "position")
    result = await _run(
        planner.move(
            _assignment_id(assignment_id),
            _parse_date(payload["date"]),
            payload["position"],
            _optional_int(payload.get("timeslot_id")),
        )
    )
    return _gesture_response(result)


@app.post("/api/v1/assignments/{assignment_id}/copy")
async def copy_assignment(
    assignment_id: str,
    payload: Dict[str, Any],
    planner: RosterPlanner = Depends(get_planner),
) -> JSONResponse:
    _require(payload, "date", "position")
    result = await _run(
        planner.copy(
            _assignment_id(assignment_id),
            _parse_date(payload["date"]),
            payload["position"],
            _optional_int(payload.get("timeslot_id")),
        )
    )
    return _gesture_response(result)


@app.delete("/api/v1/assignments/{assignment_id}")
async def delete_assignment(assignment_id: str, planner: RosterPlanner = Depends(get_planner)) -> JSONResponse:
    result = await _run(planner.remove(_assignment_id(assignment_id)))
    return _gesture_response(result)


@app.post("/api/v1/cells/reorder")
async def reorder_cell(payload: Dict[str, Any], planner: RosterPlanner = Depends(get_planner)) -> JSONResponse:
    _require(payload, "date", "position")
    ordered = [_assignment_id(str(value)) for value in payload.get("ordered_ids") or []]
    result = await _run(
        planner.reorder(
            _parse_date(payload["date"]),
            payload["position"],
            ordered,
            _optional_int(payload.get("timeslot_id")),
        )
    )
    return _gesture_response(result)


@app.post("/api/v1/weeks/{week_start}/assign")
async def assign_week(
    week_start: str,
    payload: Dict[str, Any],
    planner: RosterPlanner = Depends(get_planner),
) -> JSONResponse:
    _require(payload, "person_id", "position")
    batch = await _run(
        planner.assign_week(
            int(payload["person_id"]),
            payload["position"],
            _parse_date(week_start, "week_start"),
            _optional_int(payload.get("timeslot_id")),
        )
    )
    return JSONResponse(content=jsonable_encoder(batch.to_dict()))


@app.post("/api/v1/weeks/{week_start}/clear")
async def clear_week(week_start: str, planner: RosterPlanner = Depends(get_planner)) -> JSONResponse:
    result = await _run(planner.clear_week(_parse_date(week_start, "week_start")))
    return _gesture_response(result)


@app.post("/api/v1/days/{day}/clear")
async def clear_day(day: str, planner: RosterPlanner = Depends(get_planner)) -> JSONResponse:
    result = await _run(planner.clear_day(_parse_date(day)))
    return _gesture_response(result)


@app.post("/api/v1/weeks/{week_start}/rows/clear")
async def clear_row(
    week_start: str,
    payload: Dict[str, Any],
    planner: RosterPlanner = Depends(get_planner),
) -> JSONResponse:
    _require(payload, "position")
    result = await _run(
        planner.clear_row(
            payload["position"],
            _parse_date(week_start, "week_start"),
            _optional_int(payload.get("timeslot_id")),
        )
    )
    return _gesture_response(result)


@app.post("/api/v1/suggestions/apply")
async def apply_suggestions(payload: Dict[str, Any], planner: RosterPlanner = Depends(get_planner)) -> JSONResponse:
    candidates = payload.get("candidates") or []
    for candidate in candidates:
        _require(candidate, "person_id", "date", "position")
    batch = await _run(planner.apply_suggestions(candidates))
    return JSONResponse(content=jsonable_encoder(batch.to_dict()))


@app.get("/api/v1/override")
async def pending_override(planner: RosterPlanner = Depends(get_planner)) -> JSONResponse:
    request = planner.overrides.pending
    return JSONResponse(
        content=jsonable_encoder({"state": planner.overrides.state, "pending": request.to_dict() if request else None})
    )


@app.post("/api/v1/override/confirm")
async def confirm_override(
    payload: Optional[Dict[str, Any]] = None,
    planner: RosterPlanner = Depends(get_planner),
    db=Depends(get_db),
) -> JSONResponse:
    actor = (payload or {}).get("actor") or "api"
    request = planner.overrides.pending
    try:
        result = await _run(planner.confirm_override())
    except OverrideStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    await run_in_threadpool(
        _audit, db, actor, "OVERRIDE_CONFIRM", None, {"blockers": request.blockers if request else []}
    )
    return _gesture_response(result)


@app.post("/api/v1/override/cancel")
async def cancel_override(planner: RosterPlanner = Depends(get_planner)) -> JSONResponse:
    try:
        planner.cancel_override()
    except OverrideStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return JSONResponse(content={"state": planner.overrides.state})


@app.post("/api/v1/cascade/resolve")
async def resolve_cascade(payload: Dict[str, Any], planner: RosterPlanner = Depends(get_planner)) -> JSONResponse:
    _require(payload, "person_id", "date", "existing_id", "origin_id")
    existing = planner.store.get(_assignment_id(str(payload["existing_id"])))
    if existing is None:
        raise HTTPException(status_code=404, detail="Assignment not found")
    conflict = CascadeConflict(
        person_id=int(payload["person_id"]),
        date=_parse_date(payload["date"]),
        existing=existing,
        origin_id=_assignment_id(str(payload["origin_id"])),
        origin_position=payload.get("origin_position") or "",
    )
    result = await _run(planner.resolve_cascade_conflict(conflict))
    return _gesture_response(result)


@app.post("/api/v1/undo")
async def undo(planner: RosterPlanner = Depends(get_planner)) -> JSONResponse:
    group = await _run(planner.undo())
    if group is None:
        return JSONResponse(content={"undone": False, "remaining": len(planner.undo_log)})
    return JSONResponse(
        content=jsonable_encoder(
            {
                "undone": True,
                "label": group.label,
                "ops": [op.to_dict() for op in group.ops],
                "remaining": len(planner.undo_log),
            }
        )
    )


@app.post("/api/v1/wishes/{wish_id}/approve")
async def approve_wish(wish_id: int, planner: RosterPlanner = Depends(get_planner)) -> JSONResponse:
    result = await _run(planner.approve_wish(wish_id))
    if result.status == NOT_FOUND:
        raise HTTPException(status_code=404, detail="Wish not found")
    return _gesture_response(result)


@app.post("/api/v1/wishes/{wish_id}/reject")
async def reject_wish(
    wish_id: int,
    payload: Optional[Dict[str, Any]] = None,
    planner: RosterPlanner = Depends(get_planner),
) -> JSONResponse:
    if planner.wishes.get(wish_id) is None:
        raise HTTPException(status_code=404, detail="Wish not found")
    request = await planner.reject_wish(wish_id, (payload or {}).get("comment") or "")
    return JSONResponse(content=jsonable_encoder({"id": request.id, "status": request.status}))


@app.get("/api/v1/policy/active")
def active_policy(db=Depends(get_policy_db)) -> JSONResponse:
    policy = get_active_policy(db)
    if not policy:
        raise HTTPException(status_code=404, detail="No active policy found")
    payload = {
        "id": policy.id,
        "name": policy.name,
        "params": policy.params_dict(),
        "lastEditedBy": policy.lastEditedBy,
        "lastEditedAt": policy.lastEditedAt.isoformat() if policy.lastEditedAt else None,
    }
    return JSONResponse(content=jsonable_encoder(payload))


@app.put("/api/v1/policy/active")
async def set_active_policy(
    payload: Dict[str, Any],
    request: Request,
    db=Depends(get_policy_db),
    audit_db=Depends(get_db),
) -> JSONResponse:
    name = payload.get("name")
    params = payload.get("params") or {}
    actor = (payload.get("actor") or "api").strip() or "api"
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    policy = await run_in_threadpool(upsert_policy, db, name, params, edited_by=actor)
    planner = getattr(request.app.state, "planner", None)
    if planner is not None:
        planner.apply_settings(RuleSettings.from_policy(policy.params_dict()))
    await run_in_threadpool(_audit, audit_db, actor, "POLICY_EDIT", str(policy.id), {"name": policy.name})
    return JSONResponse(
        content=jsonable_encoder(
            {
                "id": policy.id,
                "name": policy.name,
                "params": policy.params_dict(),
                "lastEditedBy": policy.lastEditedBy,
                "lastEditedAt": policy.lastEditedAt.isoformat() if policy.lastEditedAt else None,
            }
        )
    )


def _holiday_payload(holiday) -> Dict[str, Any]:
    return {"id": holiday.id, "date": holiday.date.isoformat(), "name": holiday.name, "kind": holiday.kind}


@app.get("/api/v1/holidays")
def holidays(
    start: Optional[str] = Query(None),
    end: Optional[str] = Query(None),
    db=Depends(get_db),
) -> JSONResponse:
    start_date = _parse_date(start, "start") if start else None
    end_date = _parse_date(end, "end") if end else None
    rows = list_holidays(db, start_date, end_date)
    return JSONResponse(content=jsonable_encoder({"holidays": [_holiday_payload(row) for row in rows]}))


@app.post("/api/v1/holidays")
async def add_holiday(
    payload: Dict[str, Any],
    planner: RosterPlanner = Depends(get_planner),
    db=Depends(get_db),
) -> JSONResponse:
    _require(payload, "date")
    day = _parse_date(payload["date"])
    kind = payload.get("kind") or "custom"
    actor = payload.get("actor") or "api"
    try:
        holiday = await run_in_threadpool(set_holiday, db, day, kind=kind, name=payload.get("name") or "")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    planner.set_calendar(await run_in_threadpool(load_holiday_calendar, db))
    await run_in_threadpool(_audit, db, actor, "HOLIDAY_SET", day.isoformat(), {"kind": kind})
    return JSONResponse(content=jsonable_encoder(_holiday_payload(holiday)))


@app.delete("/api/v1/holidays/{day}")
async def delete_holiday(
    day: str,
    actor: str = Query("api"),
    planner: RosterPlanner = Depends(get_planner),
    db=Depends(get_db),
) -> JSONResponse:
    date_value = _parse_date(day)
    if not await run_in_threadpool(remove_holiday, db, date_value):
        raise HTTPException(status_code=404, detail="Holiday not found")
    planner.set_calendar(await run_in_threadpool(load_holiday_calendar, db))
    await run_in_threadpool(_audit, db, actor, "HOLIDAY_REMOVE", date_value.isoformat())
    return JSONResponse(content={"date": date_value.isoformat(), "holiday": planner.calendar.is_holiday(date_value)})
