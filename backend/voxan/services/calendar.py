from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol
from uuid import uuid4

import anyio
from google.oauth2.service_account import Credentials as ServiceAccountCredentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..config import CalendarSettings
from ..errors import NotFound, UpstreamUnavailable
from ..models import Interval, ensure_aware

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
]


@dataclass
class EventSpec:
    summary: str
    description: str
    start: datetime
    end: datetime
    timezone: str
    attendees: List[str] = field(default_factory=list)


@dataclass
class CreatedEvent:
    event_id: str
    link: str | None = None


class ExternalEventStore(Protocol):
    async def create(self, spec: EventSpec) -> CreatedEvent: ...

    async def update(self, event_id: str, start: datetime, end: datetime) -> None: ...

    async def delete(self, event_id: str) -> None: ...

    async def get(self, event_id: str) -> Optional[dict]: ...


def _parse_datetime_utc(raw: str | None) -> datetime | None:
    """Parse an ISO8601/RFC3339 datetime and normalize to UTC.

    - Accepts a trailing "Z" and converts to +00:00.
    - If the timestamp is naive, assumes UTC.
    """
    if not raw:
        return None
    try:
        dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def _event_time(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, dict):
        return _parse_datetime_utc(value.get("dateTime"))
    return None


def event_bounds(event: dict) -> Interval | None:
    """Start/end of an event from `get()`, in either the Google or stub shape."""
    start = _event_time(event.get("start"))
    end = _event_time(event.get("end"))
    if start is None or end is None or start >= end:
        return None
    return Interval(start=start, end=end)


def _status_of(exc: HttpError) -> int | None:
    resp = getattr(exc, "resp", None)
    status = getattr(resp, "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def build_event_body(spec: EventSpec, host_calendar_id: str) -> dict:
    attendees = [{"email": host_calendar_id}]
    attendees.extend({"email": email} for email in spec.attendees)
    return {
        "summary": spec.summary,
        "description": spec.description,
        "start": {"dateTime": spec.start.isoformat(), "timeZone": spec.timezone},
        "end": {"dateTime": spec.end.isoformat(), "timeZone": spec.timezone},
        "attendees": attendees,
        "reminders": {
            "useDefault": False,
            "overrides": [
                {"method": "email", "minutes": 60},
                {"method": "popup", "minutes": 10},
            ],
        },
        "colorId": "9",
        "status": "confirmed",
    }


class GoogleCalendarStore:
    """Google Calendar backed busy-interval source and event store.

    The discovery client is synchronous, so each request runs in a worker
    thread. Transport failures surface as UpstreamUnavailable; a 404 on get
    is reported as None.
    """

    def __init__(self, settings: CalendarSettings, client: Any = None) -> None:
        self._settings = settings
        self._calendar_id = settings.calendar_id
        self._client = client if client is not None else self._build_client()

    def _build_client(self):
        if self._settings.client_email and self._settings.private_key:
            info = {
                "type": "service_account",
                "client_email": self._settings.client_email,
                "private_key": self._settings.private_key,
                "token_uri": "https://oauth2.googleapis.com/token",  # nosec B106 - OAuth endpoint
            }
            creds = ServiceAccountCredentials.from_service_account_info(
                info, scopes=SCOPES
            )
        elif self._settings.credentials_file:
            path = Path(self._settings.credentials_file)
            if not path.exists():
                raise RuntimeError(f"Calendar credentials file not found: {path}")
            creds = ServiceAccountCredentials.from_service_account_file(
                str(path), scopes=SCOPES
            )
        else:
            raise RuntimeError("Google Calendar credentials are not configured")
        return build("calendar", "v3", credentials=creds, cache_discovery=False)

    async def _execute(self, request, *, operation: str) -> Any:
        try:
            return await anyio.to_thread.run_sync(request.execute)
        except HttpError as exc:
            logger.warning(
                "calendar_request_failed",
                exc_info=True,
                extra={"operation": operation, "status": _status_of(exc)},
            )
            raise

    async def query(
        self, window_start: datetime, window_end: datetime, timezone: str
    ) -> List[Interval]:
        body = {
            "timeMin": ensure_aware(window_start).isoformat(),
            "timeMax": ensure_aware(window_end).isoformat(),
            "timeZone": timezone,
            "items": [{"id": self._calendar_id}],
        }
        try:
            freebusy = await self._execute(
                self._client.freebusy().query(body=body), operation="freebusy"
            )
        except HttpError as exc:
            raise UpstreamUnavailable(
                "I couldn't reach the calendar to check availability."
            ) from exc

        busy: List[Interval] = []
        calendar = freebusy.get("calendars", {}).get(self._calendar_id, {})
        for item in calendar.get("busy", []):
            start = _parse_datetime_utc(item.get("start"))
            end = _parse_datetime_utc(item.get("end"))
            if start and end and start < end:
                busy.append(Interval(start=start, end=end))
        return busy

    async def create(self, spec: EventSpec) -> CreatedEvent:
        body = build_event_body(spec, self._calendar_id)
        try:
            created = await self._execute(
                self._client.events().insert(
                    calendarId=self._calendar_id, sendUpdates="all", body=body
                ),
                operation="insert",
            )
        except HttpError as exc:
            raise UpstreamUnavailable(
                "I couldn't create the calendar invite."
            ) from exc
        return CreatedEvent(event_id=created["id"], link=created.get("htmlLink"))

    async def update(self, event_id: str, start: datetime, end: datetime) -> None:
        body = {
            "start": {"dateTime": start.isoformat(), "timeZone": self._settings.timezone},
            "end": {"dateTime": end.isoformat(), "timeZone": self._settings.timezone},
        }
        try:
            await self._execute(
                self._client.events().patch(
                    calendarId=self._calendar_id,
                    eventId=event_id,
                    sendUpdates="all",
                    body=body,
                ),
                operation="patch",
            )
        except HttpError as exc:
            if _status_of(exc) in (404, 410):
                raise NotFound("That appointment is no longer on the calendar.") from exc
            raise UpstreamUnavailable("I couldn't update the calendar.") from exc

    async def delete(self, event_id: str) -> None:
        try:
            await self._execute(
                self._client.events().delete(
                    calendarId=self._calendar_id, eventId=event_id, sendUpdates="all"
                ),
                operation="delete",
            )
        except HttpError as exc:
            if _status_of(exc) in (404, 410):
                raise NotFound("That appointment is no longer on the calendar.") from exc
            raise UpstreamUnavailable("I couldn't update the calendar.") from exc

    async def get(self, event_id: str) -> Optional[dict]:
        try:
            event = await self._execute(
                self._client.events().get(calendarId=self._calendar_id, eventId=event_id),
                operation="get",
            )
        except HttpError as exc:
            if _status_of(exc) in (404, 410):
                return None
            raise UpstreamUnavailable("I couldn't reach the calendar.") from exc
        if event.get("status") == "cancelled":
            return None
        return event


class StubCalendarStore:
    """In-memory calendar used by default and in tests.

    Events it holds count as busy time, so slots booked through the stub are
    not offered again.
    """

    def __init__(self, busy: List[Interval] | None = None) -> None:
        self._busy: List[Interval] = list(busy or [])
        self._events: Dict[str, dict] = {}

    def add_busy(self, interval: Interval) -> None:
        self._busy.append(interval)

    @property
    def events(self) -> Dict[str, dict]:
        return dict(self._events)

    async def query(
        self, window_start: datetime, window_end: datetime, timezone: str
    ) -> List[Interval]:
        window = Interval(start=window_start, end=window_end)
        intervals = list(self._busy)
        for event in self._events.values():
            intervals.append(Interval(start=event["start"], end=event["end"]))
        return [i for i in intervals if i.overlaps(window)]

    async def create(self, spec: EventSpec) -> CreatedEvent:
        event_id = f"evt_{uuid4().hex[:12]}"
        self._events[event_id] = {
            "id": event_id,
            "summary": spec.summary,
            "description": spec.description,
            "start": ensure_aware(spec.start),
            "end": ensure_aware(spec.end),
            "attendees": list(spec.attendees),
        }
        return CreatedEvent(
            event_id=event_id, link=f"https://calendar.local/event/{event_id}"
        )

    async def update(self, event_id: str, start: datetime, end: datetime) -> None:
        event = self._events.get(event_id)
        if event is None:
            raise NotFound("That appointment is no longer on the calendar.")
        event["start"] = ensure_aware(start)
        event["end"] = ensure_aware(end)

    async def delete(self, event_id: str) -> None:
        if self._events.pop(event_id, None) is None:
            raise NotFound("That appointment is no longer on the calendar.")

    async def get(self, event_id: str) -> Optional[dict]:
        event = self._events.get(event_id)
        return dict(event) if event else None


def build_calendar_store(settings: CalendarSettings):
    if settings.use_stub:
        return StubCalendarStore()
    return GoogleCalendarStore(settings)
