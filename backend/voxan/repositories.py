from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .db_models import AppointmentDB, CallDB, LeadDB
from .errors import PersistenceError
from .models import (
    APPOINTMENT_CONFIRMED,
    CALL_IN_PROGRESS,
    LEAD_CONTACTED,
    Appointment,
    Call,
    Lead,
    ensure_aware,
    new_appointment_id,
    new_call_id,
    new_lead_id,
)

# Fields a lead upsert may fill in when they are still empty.
LEAD_FILLABLE_FIELDS = ("email", "name", "practice_name", "address", "city")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _to_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return ensure_aware(value).astimezone(UTC)


def _from_db(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value is None:
        return None
    return ensure_aware(value)


class InMemoryCallRepository:
    def __init__(self) -> None:
        self._by_id: Dict[str, Call] = {}
        self._by_vapi_id: Dict[str, str] = {}

    def create(
        self,
        vapi_call_id: str,
        assistant_id: str | None = None,
        phone_number: str | None = None,
        customer_name: str | None = None,
        practice_name: str | None = None,
        status: str = CALL_IN_PROGRESS,
    ) -> Call:
        if vapi_call_id in self._by_vapi_id:
            raise PersistenceError(f"Call {vapi_call_id} already recorded")
        call = Call(
            id=new_call_id(),
            vapi_call_id=vapi_call_id,
            assistant_id=assistant_id,
            phone_number=phone_number,
            customer_name=customer_name,
            practice_name=practice_name,
            status=status,
        )
        self._by_id[call.id] = call
        self._by_vapi_id[vapi_call_id] = call.id
        return call

    def get_by_vapi_id(self, vapi_call_id: str) -> Optional[Call]:
        call_id = self._by_vapi_id.get(vapi_call_id)
        if not call_id:
            return None
        return self._by_id.get(call_id)

    def update(
        self,
        vapi_call_id: str,
        *,
        status: str | None = None,
        duration: int | None = None,
        cost: Decimal | None = None,
        success: bool | None = None,
        outcome: str | None = None,
        transcript: str | None = None,
        recording_url: str | None = None,
        callback_requested: datetime | None = None,
    ) -> Optional[Call]:
        call = self.get_by_vapi_id(vapi_call_id)
        if not call:
            return None
        if status is not None:
            call.status = status
        if duration is not None:
            call.duration = duration
        if cost is not None:
            call.cost = cost
        if success is not None:
            call.success = success
        if outcome is not None:
            call.outcome = outcome
        if transcript is not None:
            call.transcript = transcript
        if recording_url is not None:
            call.recording_url = recording_url
        if callback_requested is not None:
            call.callback_requested = callback_requested
        call.updated_at = _utcnow()
        return call

    def list_recent(self, limit: int = 20) -> List[Call]:
        calls = sorted(self._by_id.values(), key=lambda c: c.created_at, reverse=True)
        return calls[:limit]

    def list_since(self, since: datetime) -> List[Call]:
        return [c for c in self._by_id.values() if c.created_at >= since]


class InMemoryAppointmentRepository:
    def __init__(self) -> None:
        self._by_id: Dict[str, Appointment] = {}
        self._by_event: Dict[str, str] = {}

    def create(
        self,
        customer_name: str,
        phone: str,
        email: str,
        appointment_time: datetime,
        calendar_event_id: str,
        call_id: str | None = None,
        practice_name: str | None = None,
        calendar_link: str | None = None,
        status: str = APPOINTMENT_CONFIRMED,
        notes: str | None = None,
    ) -> Appointment:
        if calendar_event_id in self._by_event:
            raise PersistenceError(
                f"Calendar event {calendar_event_id} already has an appointment"
            )
        appt = Appointment(
            id=new_appointment_id(),
            call_id=call_id,
            customer_name=customer_name,
            phone=phone,
            email=email,
            practice_name=practice_name,
            appointment_time=appointment_time,
            calendar_event_id=calendar_event_id,
            calendar_link=calendar_link,
            status=status,
            notes=notes,
        )
        self._by_id[appt.id] = appt
        self._by_event[calendar_event_id] = appt.id
        return appt

    def get(self, appointment_id: str) -> Optional[Appointment]:
        return self._by_id.get(appointment_id)

    def find_by_calendar_event(self, calendar_event_id: str) -> Optional[Appointment]:
        appt_id = self._by_event.get(calendar_event_id)
        if not appt_id:
            return None
        return self._by_id.get(appt_id)

    def update(
        self,
        appointment_id: str,
        *,
        appointment_time: datetime | None = None,
        status: str | None = None,
        notes: str | None = None,
    ) -> Optional[Appointment]:
        appt = self._by_id.get(appointment_id)
        if not appt:
            return None
        if appointment_time is not None:
            appt.appointment_time = appointment_time
        if status is not None:
            appt.status = status
        if notes is not None:
            appt.notes = notes
        appt.updated_at = _utcnow()
        return appt

    def list_for_call(self, call_id: str) -> List[Appointment]:
        return [a for a in self._by_id.values() if a.call_id == call_id]

    def list_upcoming(self, now: datetime) -> List[Appointment]:
        upcoming = [
            a
            for a in self._by_id.values()
            if a.status == APPOINTMENT_CONFIRMED and a.appointment_time >= now
        ]
        return sorted(upcoming, key=lambda a: a.appointment_time)

    def list_since(self, since: datetime) -> List[Appointment]:
        return [a for a in self._by_id.values() if a.created_at >= since]


class InMemoryLeadRepository:
    def __init__(self) -> None:
        self._by_phone: Dict[str, Lead] = {}
        # Serializes upserts so two bookings for one phone cannot both insert.
        self._lock = threading.Lock()

    def upsert(
        self,
        phone: str,
        email: str | None = None,
        name: str | None = None,
        practice_name: str | None = None,
        address: str | None = None,
        city: str | None = None,
        source: str = "vapi_call",
    ) -> Tuple[Lead, bool]:
        supplied = {
            "email": email,
            "name": name,
            "practice_name": practice_name,
            "address": address,
            "city": city,
        }
        with self._lock:
            existing = self._by_phone.get(phone)
            if existing:
                existing.contact_count += 1
                existing.last_contacted = _utcnow()
                for key in LEAD_FILLABLE_FIELDS:
                    if supplied[key] and not getattr(existing, key):
                        setattr(existing, key, supplied[key])
                return existing, False

            lead = Lead(
                id=new_lead_id(),
                phone=phone,
                source=source,
                status=LEAD_CONTACTED,
                contact_count=1,
                **supplied,
            )
            self._by_phone[phone] = lead
            return lead, True

    def get_by_phone(self, phone: str) -> Optional[Lead]:
        return self._by_phone.get(phone)


class _DbRepository:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError(
                f"Record store failure: {exc.__class__.__name__}"
            ) from exc
        finally:
            session.close()


class DbCallRepository(_DbRepository):
    """Call repository backed by the SQLAlchemy database."""

    def _to_model(self, row: Any) -> Call:
        return Call(
            id=row.id,
            vapi_call_id=row.vapi_call_id,
            assistant_id=row.assistant_id,
            phone_number=row.phone_number,
            customer_name=row.customer_name,
            practice_name=row.practice_name,
            status=row.status,
            transcript=row.transcript,
            recording_url=row.recording_url,
            cost=Decimal(str(row.cost or 0)),
            duration=row.duration or 0,
            success=bool(row.success),
            outcome=row.outcome,
            callback_requested=_from_db(row.callback_requested),
            created_at=_from_db(row.created_at),
            updated_at=_from_db(row.updated_at),
        )

    def create(
        self,
        vapi_call_id: str,
        assistant_id: str | None = None,
        phone_number: str | None = None,
        customer_name: str | None = None,
        practice_name: str | None = None,
        status: str = CALL_IN_PROGRESS,
    ) -> Call:
        with self._session() as session:
            row = CallDB(
                id=new_call_id(),
                vapi_call_id=vapi_call_id,
                assistant_id=assistant_id,
                phone_number=phone_number,
                customer_name=customer_name,
                practice_name=practice_name,
                status=status,
                cost=0,
                duration=0,
                success=False,
                created_at=_utcnow(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_model(row)

    def get_by_vapi_id(self, vapi_call_id: str) -> Optional[Call]:
        with self._session() as session:
            row = (
                session.query(CallDB)
                .filter(CallDB.vapi_call_id == vapi_call_id)
                .one_or_none()
            )
            return self._to_model(row) if row else None

    def update(
        self,
        vapi_call_id: str,
        *,
        status: str | None = None,
        duration: int | None = None,
        cost: Decimal | None = None,
        success: bool | None = None,
        outcome: str | None = None,
        transcript: str | None = None,
        recording_url: str | None = None,
        callback_requested: datetime | None = None,
    ) -> Optional[Call]:
        with self._session() as session:
            row = (
                session.query(CallDB)
                .filter(CallDB.vapi_call_id == vapi_call_id)
                .one_or_none()
            )
            if not row:
                return None
            if status is not None:
                row.status = status
            if duration is not None:
                row.duration = duration
            if cost is not None:
                row.cost = cost
            if success is not None:
                row.success = success
            if outcome is not None:
                row.outcome = outcome
            if transcript is not None:
                row.transcript = transcript
            if recording_url is not None:
                row.recording_url = recording_url
            if callback_requested is not None:
                row.callback_requested = _to_utc(callback_requested)
            row.updated_at = _utcnow()
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_model(row)

    def list_recent(self, limit: int = 20) -> List[Call]:
        with self._session() as session:
            rows = (
                session.query(CallDB)
                .order_by(CallDB.created_at.desc())
                .limit(limit)
                .all()
            )
            return [self._to_model(r) for r in rows]

    def list_since(self, since: datetime) -> List[Call]:
        with self._session() as session:
            rows = session.query(CallDB).filter(CallDB.created_at >= _to_utc(since)).all()
            return [self._to_model(r) for r in rows]


class DbAppointmentRepository(_DbRepository):
    """Appointment repository backed by the SQLAlchemy database."""

    def _to_model(self, row: AppointmentDB) -> Appointment:
        return Appointment(
            id=row.id,
            call_id=row.call_id,
            customer_name=row.customer_name,
            phone=row.phone,
            email=row.email,
            practice_name=row.practice_name,
            appointment_time=_from_db(row.appointment_time),
            calendar_event_id=row.calendar_event_id,
            calendar_link=row.calendar_link,
            status=row.status,
            notes=row.notes,
            created_at=_from_db(row.created_at),
            updated_at=_from_db(row.updated_at),
        )

    def create(
        self,
        customer_name: str,
        phone: str,
        email: str,
        appointment_time: datetime,
        calendar_event_id: str,
        call_id: str | None = None,
        practice_name: str | None = None,
        calendar_link: str | None = None,
        status: str = APPOINTMENT_CONFIRMED,
        notes: str | None = None,
    ) -> Appointment:
        with self._session() as session:
            row = AppointmentDB(
                id=new_appointment_id(),
                call_id=call_id,
                customer_name=customer_name,
                phone=phone,
                email=email,
                practice_name=practice_name,
                appointment_time=_to_utc(appointment_time),
                calendar_event_id=calendar_event_id,
                calendar_link=calendar_link,
                status=status,
                notes=notes,
                created_at=_utcnow(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_model(row)

    def get(self, appointment_id: str) -> Optional[Appointment]:
        with self._session() as session:
            row = session.get(AppointmentDB, appointment_id)
            return self._to_model(row) if row else None

    def find_by_calendar_event(self, calendar_event_id: str) -> Optional[Appointment]:
        with self._session() as session:
            row = (
                session.query(AppointmentDB)
                .filter(AppointmentDB.calendar_event_id == calendar_event_id)
                .one_or_none()
            )
            return self._to_model(row) if row else None

    def update(
        self,
        appointment_id: str,
        *,
        appointment_time: datetime | None = None,
        status: str | None = None,
        notes: str | None = None,
    ) -> Optional[Appointment]:
        with self._session() as session:
            row = session.get(AppointmentDB, appointment_id)
            if not row:
                return None
            if appointment_time is not None:
                row.appointment_time = _to_utc(appointment_time)
            if status is not None:
                row.status = status
            if notes is not None:
                row.notes = notes
            row.updated_at = _utcnow()
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_model(row)

    def list_for_call(self, call_id: str) -> List[Appointment]:
        with self._session() as session:
            rows = (
                session.query(AppointmentDB)
                .filter(AppointmentDB.call_id == call_id)
                .all()
            )
            return [self._to_model(r) for r in rows]

    def list_upcoming(self, now: datetime) -> List[Appointment]:
        with self._session() as session:
            rows = (
                session.query(AppointmentDB)
                .filter(
                    AppointmentDB.appointment_time >= _to_utc(now),
                    AppointmentDB.status == APPOINTMENT_CONFIRMED,
                )
                .order_by(AppointmentDB.appointment_time.asc())
                .all()
            )
            return [self._to_model(r) for r in rows]

    def list_since(self, since: datetime) -> List[Appointment]:
        with self._session() as session:
            rows = (
                session.query(AppointmentDB)
                .filter(AppointmentDB.created_at >= _to_utc(since))
                .all()
            )
            return [self._to_model(r) for r in rows]


class DbLeadRepository(_DbRepository):
    """Lead repository backed by the SQLAlchemy database.

    Upserts are a single INSERT ... ON CONFLICT (phone) DO UPDATE on SQLite
    and PostgreSQL, so concurrent bookings for the same phone cannot both
    insert. Other dialects fall back to insert-then-update guarded by the
    unique constraint on phone.
    """

    def _to_model(self, row: Any) -> Lead:
        return Lead(
            id=row.id,
            phone=row.phone,
            email=row.email,
            name=row.name,
            practice_name=row.practice_name,
            address=row.address,
            city=row.city,
            status=row.status,
            source=row.source,
            contact_count=row.contact_count,
            created_at=_from_db(row.created_at),
            last_contacted=_from_db(row.last_contacted),
        )

    def _insert_for(self, dialect: str):
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert

            return insert
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert

            return insert
        return None

    def upsert(
        self,
        phone: str,
        email: str | None = None,
        name: str | None = None,
        practice_name: str | None = None,
        address: str | None = None,
        city: str | None = None,
        source: str = "vapi_call",
    ) -> Tuple[Lead, bool]:
        now = _utcnow()
        values = {
            "id": new_lead_id(),
            "phone": phone,
            "email": email,
            "name": name,
            "practice_name": practice_name,
            "address": address,
            "city": city,
            "status": LEAD_CONTACTED,
            "source": source,
            "contact_count": 1,
            "created_at": now,
            "last_contacted": now,
        }
        with self._session() as session:
            insert = self._insert_for(session.get_bind().dialect.name)
            if insert is None:
                return self._upsert_with_retry(session, values)

            table = LeadDB.__table__
            stmt = insert(table).values(**values)
            updates = {
                "contact_count": table.c.contact_count + 1,
                "last_contacted": stmt.excluded.last_contacted,
            }
            for key in LEAD_FILLABLE_FIELDS:
                updates[key] = func.coalesce(table.c[key], stmt.excluded[key])
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.phone], set_=updates
            ).returning(*table.c)
            row = session.execute(stmt).one()
            session.commit()
            lead = self._to_model(row)
            return lead, lead.contact_count == 1

    def _upsert_with_retry(
        self, session: Session, values: dict
    ) -> Tuple[Lead, bool]:
        try:
            row = LeadDB(**values)
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_model(row), True
        except IntegrityError:
            session.rollback()
        row = (
            session.query(LeadDB)
            .filter(LeadDB.phone == values["phone"])
            .with_for_update()
            .one()
        )
        row.contact_count = row.contact_count + 1
        row.last_contacted = values["last_contacted"]
        for key in LEAD_FILLABLE_FIELDS:
            if values[key] and not getattr(row, key):
                setattr(row, key, values[key])
        session.add(row)
        session.commit()
        session.refresh(row)
        return self._to_model(row), False

    def get_by_phone(self, phone: str) -> Optional[Lead]:
        with self._session() as session:
            row = session.query(LeadDB).filter(LeadDB.phone == phone).one_or_none()
            return self._to_model(row) if row else None
