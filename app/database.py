from __future__ import annotations

import datetime
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.types import Time

from positions import normalize_category, normalize_position
from roster import Assignment, PendingRequest, Person, RosterCatalog, Timeslot, WorkSlotDefinition, coerce_date
from workdays import HolidayCalendar


DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
CATALOG_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'staff.db').as_posix()}"
ROSTER_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'roster.db').as_posix()}"
POLICY_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'policy.db').as_posix()}"
WISH_STATUS_CHOICES = {"pending", "approved", "rejected"}
WISH_TYPE_CHOICES = {"service", "no_service"}
NOTIFICATION_KINDS = {"create", "update", "delete"}
HOLIDAY_KINDS = ("public", "custom", "removed")


class StaleReference(LookupError):
    """Raised when a mutation targets a shift entry that no longer exists."""


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class CatalogBase(DeclarativeBase):
    """Standalone metadata for staff/workplace tables living in staff.db."""

    pass


class PolicyBase(DeclarativeBase):
    """Standalone metadata for policy tables living in policy.db."""

    pass


class Base(DeclarativeBase):
    """Metadata for roster tables living in roster.db."""

    pass


class StaffMember(CatalogBase):
    __tablename__ = "staff_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    initials: Mapped[str] = mapped_column(String(12), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(60), nullable=False, default="")
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fte: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)


class Workplace(CatalogBase):
    __tablename__ = "workplaces"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(80), nullable=False, unique=True)
    category: Mapped[str] = mapped_column(String(24), nullable=False, default="Duty")
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    auto_rest_after: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    allows_rotation_concurrency: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    allows_consecutive_days: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    affects_availability: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    timeslots_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class WorkplaceTimeslot(CatalogBase):
    __tablename__ = "workplace_timeslots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workplace_id: Mapped[int] = mapped_column(Integer, nullable=False)
    label: Mapped[str] = mapped_column(String(60), nullable=False, default="")
    start_time: Mapped[datetime.time | None] = mapped_column(Time, nullable=True)
    end_time: Mapped[datetime.time | None] = mapped_column(Time, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Policy(PolicyBase):
    __tablename__ = "policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    paramsJSON: Mapped[str] = mapped_column(String(8000), nullable=False, default="{}")
    lastEditedBy: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    lastEditedAt: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("name", name="uq_policies_name"),
    )

    def params_dict(self) -> Dict:
        try:
            value = json.loads(self.paramsJSON or "{}")
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        return {}


class ShiftEntry(Base):
    __tablename__ = "shift_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    person_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False, index=True)
    position: Mapped[str] = mapped_column(String(80), nullable=False)
    timeslot_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    note: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class WishRequest(Base):
    __tablename__ = "wish_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    person_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="service")
    position: Mapped[str | None] = mapped_column(String(80), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    admin_comment: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class ShiftNotification(Base):
    __tablename__ = "shift_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    person_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    message: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="ShiftEntry")
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Holiday(Base):
    __tablename__ = "holidays"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    # public, custom, or removed (a public holiday worked as a normal day)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="custom")

    __table_args__ = (
        UniqueConstraint("date", "kind", name="uq_holidays_date_kind"),
    )


catalog_engine = create_engine(
    CATALOG_DATABASE_URL,
    echo=False,
    future=True,
)
roster_engine = create_engine(
    ROSTER_DATABASE_URL,
    echo=False,
    future=True,
)
policy_engine = create_engine(
    POLICY_DATABASE_URL,
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=roster_engine, expire_on_commit=False, future=True)
CatalogSessionLocal = sessionmaker(bind=catalog_engine, expire_on_commit=False, future=True)
PolicySessionLocal = sessionmaker(bind=policy_engine, expire_on_commit=False, future=True)


def init_database() -> None:
    CatalogBase.metadata.create_all(catalog_engine)
    Base.metadata.create_all(roster_engine)
    PolicyBase.metadata.create_all(policy_engine)


def _coerce_catalog_session(session):
    """Return (catalog_session, should_close) ensuring we talk to the staff database."""
    if session is None:
        return CatalogSessionLocal(), True
    bind = getattr(session, "bind", None)
    if bind is roster_engine or bind is policy_engine:
        return CatalogSessionLocal(), True
    return session, False


def _coerce_policy_session(session):
    """Return (policy_session, should_close) ensuring policy data stays in its own database."""
    PolicyBase.metadata.create_all(policy_engine)
    if session is None:
        return PolicySessionLocal(), True
    bind = getattr(session, "bind", None)
    if bind is roster_engine or bind is catalog_engine:
        return PolicySessionLocal(), True
    return session, False


def get_policies(session) -> List[Policy]:
    policy_session, close_session = _coerce_policy_session(session)
    try:
        stmt = select(Policy).order_by(Policy.name.asc(), Policy.id.asc())
        return list(policy_session.scalars(stmt))
    finally:
        if close_session:
            policy_session.close()


def upsert_policy(session, name: str, params_dict: Dict, *, edited_by: str = "system") -> Policy:
    policy_session, close_session = _coerce_policy_session(session)
    try:
        existing: Optional[Policy] = policy_session.execute(
            select(Policy).where(Policy.name == name)
        ).scalars().first()
        payload = params_dict if isinstance(params_dict, dict) else {}
        if existing:
            existing.paramsJSON = json.dumps(payload)
            existing.lastEditedBy = edited_by
            existing.lastEditedAt = _utcnow()
            policy_session.commit()
            policy_session.refresh(existing)
            return existing
        policy = Policy(
            name=name,
            paramsJSON=json.dumps(payload),
            lastEditedBy=edited_by,
            lastEditedAt=_utcnow(),
        )
        policy_session.add(policy)
        policy_session.commit()
        policy_session.refresh(policy)
        return policy
    finally:
        if close_session:
            policy_session.close()


def get_active_policy(session) -> Optional[Policy]:
    policy_session, close_session = _coerce_policy_session(session)
    try:
        stmt = select(Policy).order_by(Policy.lastEditedAt.desc(), Policy.id.desc())
        return policy_session.scalars(stmt).first()
    finally:
        if close_session:
            policy_session.close()


def load_catalog(catalog_session=None) -> RosterCatalog:
    """Read people, workplaces and timeslots into a :class:`RosterCatalog`."""
    session, close_session = _coerce_catalog_session(catalog_session)
    try:
        persons = [
            Person(
                id=row.id,
                name=row.name,
                initials=row.initials,
                role=row.role,
                order=row.sort_order,
                fte=row.fte,
            )
            for row in session.scalars(select(StaffMember).order_by(StaffMember.sort_order, StaffMember.id))
        ]
        workplaces = [
            WorkSlotDefinition(
                id=row.id,
                name=row.name,
                category=normalize_category(row.category),
                order=row.sort_order,
                auto_rest_after=bool(row.auto_rest_after),
                allows_rotation_concurrency=row.allows_rotation_concurrency,
                allows_consecutive_days=bool(row.allows_consecutive_days),
                affects_availability=bool(row.affects_availability),
                timeslots_enabled=bool(row.timeslots_enabled),
            )
            for row in session.scalars(select(Workplace).order_by(Workplace.sort_order, Workplace.id))
        ]
        timeslots = [
            Timeslot(
                id=row.id,
                workplace_id=row.workplace_id,
                label=row.label,
                start_time=row.start_time,
                end_time=row.end_time,
                order=row.sort_order,
            )
            for row in session.scalars(select(WorkplaceTimeslot))
        ]
    finally:
        if close_session:
            session.close()
    return RosterCatalog(persons=persons, workplaces=workplaces, timeslots=timeslots)


def _entry_to_assignment(entry: ShiftEntry) -> Assignment:
    return Assignment(
        id=entry.id,
        person_id=entry.person_id,
        date=entry.date,
        position=entry.position,
        timeslot_id=entry.timeslot_id,
        order=entry.sort_order,
        note=entry.note or "",
    )


def _apply_entry_fields(entry: ShiftEntry, payload: Dict[str, Any]) -> None:
    if "person_id" in payload:
        if payload["person_id"] is None:
            raise ValueError("Shift entry person_id is required.")
        entry.person_id = int(payload["person_id"])
    if "date" in payload:
        if not isinstance(payload["date"], (datetime.date, str)):
            raise TypeError("Shift entry date must be a date instance or ISO string.")
        entry.date = coerce_date(payload["date"])
    if "position" in payload:
        position = normalize_position(payload["position"])
        if not position:
            raise ValueError("Shift entry position is required.")
        entry.position = position
    if "timeslot_id" in payload:
        entry.timeslot_id = payload["timeslot_id"]
    if "order" in payload:
        order = int(payload["order"] or 0)
        if order < 0:
            raise ValueError("Shift entry order must be non-negative.")
        entry.sort_order = order
    if "note" in payload:
        entry.note = payload["note"] or ""


def list_shift_entries(session, start: datetime.date, end: datetime.date) -> List[Assignment]:
    stmt = (
        select(ShiftEntry)
        .where(ShiftEntry.date >= coerce_date(start), ShiftEntry.date <= coerce_date(end))
        .order_by(ShiftEntry.date, ShiftEntry.position, ShiftEntry.sort_order, ShiftEntry.id)
    )
    return [_entry_to_assignment(entry) for entry in session.scalars(stmt)]


def get_shift_entry(session, entry_id: int) -> Optional[Assignment]:
    entry = session.get(ShiftEntry, entry_id)
    return _entry_to_assignment(entry) if entry else None


def create_shift_entry(session, payload: Dict[str, Any]) -> Assignment:
    for key in ("person_id", "date", "position"):
        if payload.get(key) in (None, ""):
            raise ValueError(f"Shift entry {key} is required.")
    entry = ShiftEntry()
    _apply_entry_fields(entry, payload)
    session.add(entry)
    session.commit()
    session.refresh(entry)
    return _entry_to_assignment(entry)


def update_shift_entry(session, entry_id: int, changes: Dict[str, Any]) -> Assignment:
    entry = session.get(ShiftEntry, entry_id)
    if not entry:
        raise StaleReference(f"Shift entry with id {entry_id} was not found.")
    _apply_entry_fields(entry, changes)
    session.commit()
    session.refresh(entry)
    return _entry_to_assignment(entry)


def delete_shift_entry(session, entry_id: int) -> bool:
    entry = session.get(ShiftEntry, entry_id)
    if not entry:
        return False
    session.delete(entry)
    session.commit()
    return True


def _wish_to_request(wish: WishRequest) -> PendingRequest:
    return PendingRequest(
        id=wish.id,
        person_id=wish.person_id,
        date=wish.date,
        type=wish.type,
        position=wish.position,
        status=wish.status,
        admin_comment=wish.admin_comment or "",
    )


def create_wish_request(session, payload: Dict[str, Any]) -> PendingRequest:
    wish_type = (payload.get("type") or "service").lower()
    if wish_type not in WISH_TYPE_CHOICES:
        raise ValueError(f"Unsupported wish type '{wish_type}'.")
    wish = WishRequest(
        person_id=int(payload["person_id"]),
        date=coerce_date(payload["date"]),
        type=wish_type,
        position=normalize_position(payload.get("position")) or None,
        status=(payload.get("status") or "pending").lower(),
        admin_comment=payload.get("admin_comment") or "",
    )
    session.add(wish)
    session.commit()
    session.refresh(wish)
    return _wish_to_request(wish)


def list_wish_requests(session, start: datetime.date, end: datetime.date) -> List[PendingRequest]:
    stmt = (
        select(WishRequest)
        .where(WishRequest.date >= coerce_date(start), WishRequest.date <= coerce_date(end))
        .order_by(WishRequest.date, WishRequest.id)
    )
    return [_wish_to_request(wish) for wish in session.scalars(stmt)]


def set_wish_status(session, wish_id: int, status: str, *, comment: Optional[str] = None) -> PendingRequest:
    normalized = (status or "").strip().lower()
    if normalized not in WISH_STATUS_CHOICES:
        raise ValueError(f"Unsupported wish status '{status}'.")
    wish = session.get(WishRequest, wish_id)
    if not wish:
        raise StaleReference(f"Wish request with id {wish_id} was not found.")
    wish.status = normalized
    if comment is not None:
        wish.admin_comment = comment
    session.commit()
    session.refresh(wish)
    return _wish_to_request(wish)


def create_notification(
    session,
    person_id: int,
    date_value: datetime.date,
    kind: str,
    message: str,
) -> ShiftNotification:
    if kind not in NOTIFICATION_KINDS:
        raise ValueError(f"Unsupported notification kind '{kind}'.")
    notification = ShiftNotification(
        person_id=person_id,
        date=coerce_date(date_value),
        kind=kind,
        message=message or "",
    )
    session.add(notification)
    session.commit()
    return notification


def list_notifications(session, person_id: Optional[int] = None, *, unread_only: bool = False) -> List[ShiftNotification]:
    stmt = select(ShiftNotification).order_by(ShiftNotification.created_at.desc(), ShiftNotification.id.desc())
    if person_id is not None:
        stmt = stmt.where(ShiftNotification.person_id == person_id)
    if unread_only:
        stmt = stmt.where(ShiftNotification.acknowledged.is_(False))
    return list(session.scalars(stmt))


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "ShiftEntry",
    target_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    log = AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}, default=str),
    )
    session.add(log)
    session.commit()
    return log


def list_holidays(session, start: Optional[datetime.date] = None, end: Optional[datetime.date] = None) -> List[Holiday]:
    stmt = select(Holiday).order_by(Holiday.date, Holiday.kind, Holiday.id)
    if start is not None:
        stmt = stmt.where(Holiday.date >= coerce_date(start))
    if end is not None:
        stmt = stmt.where(Holiday.date <= coerce_date(end))
    return list(session.scalars(stmt))


def _holiday_row(session, date_value: datetime.date, kind: str) -> Optional[Holiday]:
    return session.execute(
        select(Holiday).where(Holiday.date == date_value, Holiday.kind == kind)
    ).scalars().first()


def set_holiday(session, date_value: datetime.date, *, kind: str = "custom", name: str = "") -> Holiday:
    """Store a holiday. A custom entry cancels an earlier removal of the same date."""
    if kind not in HOLIDAY_KINDS:
        raise ValueError(f"Unsupported holiday kind '{kind}'.")
    date_value = coerce_date(date_value)
    if kind == "custom":
        removal = _holiday_row(session, date_value, "removed")
        if removal is not None:
            session.delete(removal)
    holiday = _holiday_row(session, date_value, kind)
    if holiday is None:
        holiday = Holiday(date=date_value, kind=kind)
        session.add(holiday)
    holiday.name = name or holiday.name or ""
    session.commit()
    session.refresh(holiday)
    return holiday


def remove_holiday(session, date_value: datetime.date) -> bool:
    """Drop a custom holiday; a public one is kept but marked as removed."""
    date_value = coerce_date(date_value)
    changed = False
    custom = _holiday_row(session, date_value, "custom")
    if custom is not None:
        session.delete(custom)
        changed = True
    public = _holiday_row(session, date_value, "public")
    if public is not None and _holiday_row(session, date_value, "removed") is None:
        session.add(Holiday(date=date_value, kind="removed", name=public.name))
        changed = True
    session.commit()
    return changed


def load_holiday_calendar(session) -> HolidayCalendar:
    payload: Dict[str, List[Dict[str, Any]]] = {kind: [] for kind in HOLIDAY_KINDS}
    for holiday in list_holidays(session):
        payload[holiday.kind].append({"date": holiday.date.isoformat(), "name": holiday.name})
    return HolidayCalendar.from_payload(payload)
