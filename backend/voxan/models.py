from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import List, Optional
from uuid import uuid4

CALL_IN_PROGRESS = "in-progress"
CALL_COMPLETED = "completed"
CALL_NO_ANSWER = "no-answer"
CALL_VOICEMAIL = "voicemail"
CALL_OUTBOUND = "outbound"

APPOINTMENT_CONFIRMED = "confirmed"
APPOINTMENT_PENDING = "pending"
APPOINTMENT_CANCELLED = "cancelled"
APPOINTMENT_COMPLETED = "completed"
TERMINAL_APPOINTMENT_STATUSES = {APPOINTMENT_CANCELLED, APPOINTMENT_COMPLETED}

LEAD_NEW = "new"
LEAD_CONTACTED = "contacted"
LEAD_HOT = "hot"
LEAD_WARM = "warm"
LEAD_COLD = "cold"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


@dataclass(frozen=True)
class Interval:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        start = ensure_aware(self.start)
        end = ensure_aware(self.end)
        if start >= end:
            raise ValueError("Interval start must be before end")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    def overlaps(self, other: "Interval") -> bool:
        return overlaps(self, other)


def overlaps(a: Interval, b: Interval) -> bool:
    # Half-open: touching endpoints do not overlap.
    return a.start < b.end and b.start < a.end


def subtract(a: Interval, cut: Interval) -> List[Interval]:
    """Return the parts of `a` not covered by `cut` (zero, one or two pieces)."""
    if not overlaps(a, cut):
        return [a]
    pieces: List[Interval] = []
    if a.start < cut.start:
        pieces.append(Interval(start=a.start, end=cut.start))
    if cut.end < a.end:
        pieces.append(Interval(start=cut.end, end=a.end))
    return pieces


def _clock(value: datetime) -> str:
    hour = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{hour}:{value.minute:02d} {suffix}"


@dataclass(frozen=True)
class SlotCandidate:
    """A proposed start time; display fields are derived from `start`."""

    start: datetime
    duration_minutes: int
    timezone: str

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.duration_minutes)

    @property
    def day(self) -> str:
        return self.start.strftime("%A")

    @property
    def display_date(self) -> str:
        return f"{self.start:%A}, {self.start:%B} {self.start.day}"

    @property
    def display_time(self) -> str:
        return _clock(self.start)

    @property
    def display(self) -> str:
        return f"{self.display_date} at {self.display_time}"

    def to_dict(self) -> dict:
        return {
            "datetime": self.start.isoformat(),
            "display": self.display,
            "displayDate": self.display_date,
            "displayTime": self.display_time,
            "day": self.day,
        }


@dataclass
class Call:
    id: str
    vapi_call_id: str
    assistant_id: Optional[str] = None
    phone_number: Optional[str] = None
    customer_name: Optional[str] = None
    practice_name: Optional[str] = None
    status: str = CALL_IN_PROGRESS
    transcript: Optional[str] = None
    recording_url: Optional[str] = None
    cost: Decimal = Decimal("0")
    duration: int = 0
    success: bool = False
    outcome: Optional[str] = None
    callback_requested: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class Appointment:
    id: str
    customer_name: str
    phone: str
    email: str
    appointment_time: datetime
    calendar_event_id: str
    call_id: Optional[str] = None
    practice_name: Optional[str] = None
    calendar_link: Optional[str] = None
    status: str = APPOINTMENT_CONFIRMED
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class Lead:
    id: str
    phone: str
    email: Optional[str] = None
    name: Optional[str] = None
    practice_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    status: str = LEAD_CONTACTED
    source: str = "vapi_call"
    contact_count: int = 1
    created_at: datetime = field(default_factory=_utcnow)
    last_contacted: datetime = field(default_factory=_utcnow)


def new_call_id() -> str:
    return str(uuid4())


def new_appointment_id() -> str:
    return str(uuid4())


def new_lead_id() -> str:
    return str(uuid4())
