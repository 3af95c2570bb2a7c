from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Iterable, List, Protocol
from zoneinfo import ZoneInfo

from ..config import CalendarSettings
from ..models import Interval, SlotCandidate, ensure_aware, overlaps, subtract

logger = logging.getLogger(__name__)


class BusyIntervalSource(Protocol):
    async def query(
        self, window_start: datetime, window_end: datetime, timezone: str
    ) -> List[Interval]: ...


def _parse_closed_days(raw: str | None) -> set[int]:
    """Parse a comma-separated list of closed days into weekday indices.

    Accepts short/long day names (e.g. "Sun", "Sunday") or integers 0-6
    where Monday=0.
    """
    if not raw:
        return set()
    tokens = [t.strip() for t in str(raw).split(",") if t.strip()]
    mapping = {
        "mon": 0,
        "monday": 0,
        "tue": 1,
        "tues": 1,
        "tuesday": 1,
        "wed": 2,
        "wednesday": 2,
        "thu": 3,
        "thur": 3,
        "thurs": 3,
        "thursday": 3,
        "fri": 4,
        "friday": 4,
        "sat": 5,
        "saturday": 5,
        "sun": 6,
        "sunday": 6,
    }
    closed: set[int] = set()
    for token in tokens:
        key = token.lower()
        if key in mapping:
            closed.add(mapping[key])
            continue
        try:
            idx = int(token)
        except ValueError:
            continue
        if 0 <= idx <= 6:
            closed.add(idx)
    return closed


@dataclass(frozen=True)
class SlotPolicy:
    open_hour: int = 9
    close_hour: int = 17
    lunch_start_hour: int = 12
    lunch_end_hour: int = 13
    weekend_days: frozenset[int] = frozenset({5, 6})
    min_lead: timedelta = timedelta(minutes=5)
    step: timedelta = timedelta(hours=1)

    @classmethod
    def from_settings(cls, settings: CalendarSettings) -> "SlotPolicy":
        return cls(
            open_hour=settings.open_hour,
            close_hour=settings.close_hour,
            lunch_start_hour=settings.lunch_start_hour,
            lunch_end_hour=settings.lunch_end_hour,
            weekend_days=frozenset(_parse_closed_days(settings.closed_days)),
            min_lead=timedelta(minutes=settings.min_lead_minutes),
            step=timedelta(minutes=settings.slot_step_minutes),
        )


DEFAULT_POLICY = SlotPolicy()


def _at_open(day: datetime, open_hour: int) -> datetime:
    return day.replace(hour=open_hour, minute=0, second=0, microsecond=0)


def _first_candidate(window_start: datetime, policy: SlotPolicy) -> datetime:
    anchor = _at_open(window_start, policy.open_hour)
    if anchor < window_start:
        anchor = (window_start + timedelta(hours=1)).replace(
            minute=0, second=0, microsecond=0
        )
    return anchor


def _in_lunch(current: datetime, policy: SlotPolicy) -> bool:
    # Both lunch boundaries are inclusive: 12:00 and 13:00 are rejected.
    minute_of_day = current.hour * 60 + current.minute
    return (
        policy.lunch_start_hour * 60 <= minute_of_day <= policy.lunch_end_hour * 60
    )


def generate_slots(
    window_start: datetime,
    window_end: datetime,
    busy: Iterable[Interval],
    duration_minutes: int,
    timezone: str,
    max_results: int,
    policy: SlotPolicy = DEFAULT_POLICY,
) -> List[SlotCandidate]:
    """Return up to `max_results` free slot candidates, earliest first.

    Candidates start on the hour from 09:00 local, skip weekend days and the
    lunch window (12:00 through 13:00 inclusive), never overlap a busy
    interval (half-open) and start at least `policy.min_lead` after
    `window_start`. A candidate at or after closing time moves the scan to
    opening time on the next calendar day.
    """
    if duration_minutes <= 0:
        raise ValueError("duration_minutes must be positive")
    if max_results <= 0:
        return []

    tz = ZoneInfo(timezone)
    window_start = ensure_aware(window_start).astimezone(tz)
    window_end = ensure_aware(window_end).astimezone(tz)
    busy_local = [
        Interval(start=b.start.astimezone(tz), end=b.end.astimezone(tz)) for b in busy
    ]
    duration = timedelta(minutes=duration_minutes)
    earliest = window_start + policy.min_lead

    slots: List[SlotCandidate] = []
    current = _first_candidate(window_start, policy)
    while current <= window_end and len(slots) < max_results:
        if current.hour >= policy.close_hour or current.weekday() in policy.weekend_days:
            current = _at_open(current + timedelta(days=1), policy.open_hour)
            continue
        if current.hour < policy.open_hour:
            current = _at_open(current, policy.open_hour)
            continue

        if not _in_lunch(current, policy) and current >= earliest:
            tentative = Interval(start=current, end=current + duration)
            if not any(overlaps(tentative, b) for b in busy_local):
                slots.append(
                    SlotCandidate(
                        start=current,
                        duration_minutes=duration_minutes,
                        timezone=timezone,
                    )
                )
        current = current + policy.step

    return slots


class AvailabilityService:
    """Answers the voice agent's availability question.

    Busy intervals are fetched fresh on every call; results must not be
    cached across booking decisions.
    """

    def __init__(self, busy_source: BusyIntervalSource, settings: CalendarSettings) -> None:
        self._busy_source = busy_source
        self._settings = settings
        self._policy = SlotPolicy.from_settings(settings)

    @property
    def policy(self) -> SlotPolicy:
        return self._policy

    async def check_availability(
        self,
        days_ahead: int | None = None,
        duration_minutes: int = 30,
        timezone: str | None = None,
        now: datetime | None = None,
    ) -> List[SlotCandidate]:
        timezone = timezone or self._settings.timezone
        days_ahead = days_ahead or self._settings.days_ahead
        tz = ZoneInfo(timezone)
        now = ensure_aware(now or datetime.now(UTC)).astimezone(tz)
        end = now + timedelta(days=days_ahead)

        # UpstreamUnavailable propagates to the caller untouched.
        busy = await self._busy_source.query(now, end, timezone)
        window_end = end.replace(
            hour=self._policy.close_hour, minute=0, second=0, microsecond=0
        )
        slots = generate_slots(
            now,
            window_end,
            busy,
            duration_minutes,
            timezone,
            self._settings.max_slots,
            policy=self._policy,
        )
        logger.info(
            "availability_checked",
            extra={
                "days_ahead": days_ahead,
                "duration_minutes": duration_minutes,
                "timezone": timezone,
                "busy_count": len(busy),
                "slot_count": len(slots),
            },
        )
        return slots

    async def is_free(
        self,
        start: datetime,
        duration_minutes: int,
        timezone: str | None = None,
        ignore: Interval | None = None,
    ) -> bool:
        """Return True when [start, start + duration) overlaps no busy interval.

        `ignore` is cut out of every busy interval first, so an appointment's
        own time does not block it even when the source reports it merged
        with neighbouring bookings or clipped to the query window.
        """
        timezone = timezone or self._settings.timezone
        start = ensure_aware(start)
        tentative = Interval(start=start, end=start + timedelta(minutes=duration_minutes))
        busy = await self._busy_source.query(tentative.start, tentative.end, timezone)
        for interval in busy:
            pieces = [interval] if ignore is None else subtract(interval, ignore)
            if any(overlaps(tentative, piece) for piece in pieces):
                return False
        return True
