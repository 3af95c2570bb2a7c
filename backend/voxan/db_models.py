from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String, Text

from .db import Base


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CallDB(Base):
    __tablename__ = "calls"

    id = Column(String, primary_key=True)
    vapi_call_id = Column(String, nullable=False, unique=True, index=True)
    assistant_id = Column(String, nullable=True)
    phone_number = Column(String, nullable=True, index=True)
    customer_name = Column(String, nullable=True)
    practice_name = Column(String, nullable=True)
    status = Column(String, nullable=False, default="in-progress")
    transcript = Column(Text, nullable=True)
    recording_url = Column(String, nullable=True)
    cost = Column(Numeric(10, 4), nullable=False, default=0)
    duration = Column(Integer, nullable=False, default=0)
    success = Column(Boolean, nullable=False, default=False)
    outcome = Column(Text, nullable=True)
    callback_requested = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class AppointmentDB(Base):
    __tablename__ = "appointments"

    id = Column(String, primary_key=True)
    call_id = Column(String, nullable=True, index=True)
    customer_name = Column(String, nullable=False)
    phone = Column(String, nullable=False, index=True)
    email = Column(String, nullable=False)
    practice_name = Column(String, nullable=True)
    appointment_time = Column(DateTime(timezone=True), nullable=False, index=True)
    calendar_event_id = Column(String, nullable=False, unique=True, index=True)
    calendar_link = Column(String, nullable=True)
    status = Column(String, nullable=False, default="confirmed")
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class LeadDB(Base):
    __tablename__ = "leads"

    id = Column(String, primary_key=True)
    phone = Column(String, nullable=False, unique=True, index=True)
    email = Column(String, nullable=True)
    name = Column(String, nullable=True)
    practice_name = Column(String, nullable=True)
    address = Column(String, nullable=True)
    city = Column(String, nullable=True)
    status = Column(String, nullable=False, default="contacted")
    source = Column(String, nullable=False, default="vapi_call")
    contact_count = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    last_contacted = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
