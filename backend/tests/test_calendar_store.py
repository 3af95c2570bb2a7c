from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest
from googleapiclient.errors import HttpError

from voxan.config import CalendarSettings
from voxan.errors import NotFound, UpstreamUnavailable
from voxan.models import Interval
from voxan.services.calendar import (
    EventSpec,
    GoogleCalendarStore,
    StubCalendarStore,
    _parse_datetime_utc,
    build_calendar_store,
    build_event_body,
)

LONDON = ZoneInfo("Europe/London")
START = datetime(2025, 3, 4, 10, tzinfo=LONDON)


class DummyResp(dict):
    def __init__(self, status: int) -> None:
        super().__init__()
        self.status = status
        self.reason = "error"


class DummyRequest:
    def __init__(self, result=None, status: int | None = None) -> None:
        self._result = result
        self._status = status

    def execute(self):
        if self._status is not None:
            raise HttpError(resp=DummyResp(self._status), content=b"forced error")
        return self._result


class DummyEvents:
    def __init__(self, client) -> None:
        self._client = client

    def insert(self, calendarId, sendUpdates, body):
        self._client.calls.append(("insert", calendarId, sendUpdates, body))
        return DummyRequest({"id": "evt-google-1", "htmlLink": "https://calendar.google.com/e/1"})

    def patch(self, calendarId, eventId, sendUpdates, body):
        self._client.calls.append(("patch", eventId, sendUpdates, body))
        return DummyRequest({}, status=self._client.patch_status)

    def delete(self, calendarId, eventId, sendUpdates):
        self._client.calls.append(("delete", eventId, sendUpdates))
        return DummyRequest(None, status=self._client.delete_status)

    def get(self, calendarId, eventId):
        self._client.calls.append(("get", eventId))
        return DummyRequest(self._client.event, status=self._client.get_status)


class DummyFreeBusy:
    def __init__(self, client) -> None:
        self._client = client

    def query(self, body):
        self._client.calls.append(("freebusy", body))
        return DummyRequest(self._client.freebusy_result, status=self._client.freebusy_status)


class DummyGoogleClient:
    def __init__(self) -> None:
        self.calls = []
        self.freebusy_result = {"calendars": {}}
        self.freebusy_status = None
        self.patch_status = None
        self.delete_status = None
        self.get_status = None
        self.event = {"id": "evt-google-1", "status": "confirmed"}

    def events(self):
        return DummyEvents(self)

    def freebusy(self):
        return DummyFreeBusy(self)


def _store(client=None):
    return GoogleCalendarStore(
        CalendarSettings(calendar_id="demo@voxan.ai", use_stub=False),
        client=client or DummyGoogleClient(),
    )


def _spec():
    return EventSpec(
        summary="VoxAn Demo: Smiles Dental",
        description="Demo call",
        start=START,
        end=START + timedelta(minutes=30),
        timezone="Europe/London",
        attendees=["owner@voxan.ai"],
    )


def test_parse_datetime_utc_normalizes_offsets():
    assert _parse_datetime_utc("2025-03-04T10:00:00Z") == datetime(2025, 3, 4, 10, tzinfo=UTC)
    assert _parse_datetime_utc("2025-06-02T10:00:00+01:00") == datetime(2025, 6, 2, 9, tzinfo=UTC)
    assert _parse_datetime_utc("2025-03-04T10:00:00").tzinfo is UTC
    assert _parse_datetime_utc("not a date") is None
    assert _parse_datetime_utc(None) is None


def test_event_body_invites_host_and_attendees():
    body = build_event_body(_spec(), "demo@voxan.ai")
    assert body["attendees"] == [{"email": "demo@voxan.ai"}, {"email": "owner@voxan.ai"}]
    assert body["start"]["timeZone"] == "Europe/London"
    assert body["reminders"]["overrides"][0] == {"method": "email", "minutes": 60}


def test_build_calendar_store_defaults_to_stub():
    assert isinstance(build_calendar_store(CalendarSettings()), StubCalendarStore)


def test_google_store_requires_credentials():
    with pytest.raises(RuntimeError):
        GoogleCalendarStore(CalendarSettings(use_stub=False))


@pytest.mark.anyio
async def test_query_returns_busy_intervals():
    client = DummyGoogleClient()
    client.freebusy_result = {
        "calendars": {
            "demo@voxan.ai": {
                "busy": [
                    {"start": "2025-03-04T10:00:00Z", "end": "2025-03-04T11:00:00Z"},
                    {"start": "2025-03-04T12:00:00Z", "end": "2025-03-04T12:00:00Z"},
                ]
            }
        }
    }
    busy = await _store(client).query(START, START + timedelta(days=1), "Europe/London")

    assert busy == [
        Interval(
            start=datetime(2025, 3, 4, 10, tzinfo=UTC),
            end=datetime(2025, 3, 4, 11, tzinfo=UTC),
        )
    ]
    assert client.calls[0][1]["items"] == [{"id": "demo@voxan.ai"}]


@pytest.mark.anyio
async def test_query_failure_raises_upstream_unavailable():
    client = DummyGoogleClient()
    client.freebusy_status = 500
    with pytest.raises(UpstreamUnavailable):
        await _store(client).query(START, START + timedelta(days=1), "Europe/London")


@pytest.mark.anyio
async def test_create_update_delete_send_updates_to_attendees():
    client = DummyGoogleClient()
    store = _store(client)

    created = await store.create(_spec())
    await store.update("evt-google-1", START, START + timedelta(minutes=30))
    await store.delete("evt-google-1")

    assert created.event_id == "evt-google-1"
    assert created.link == "https://calendar.google.com/e/1"
    assert [c[0] for c in client.calls] == ["insert", "patch", "delete"]
    assert all("all" in c for c in client.calls)


@pytest.mark.anyio
async def test_missing_events_are_reported_as_not_found():
    client = DummyGoogleClient()
    client.patch_status = 404
    client.delete_status = 410
    client.get_status = 404
    store = _store(client)

    with pytest.raises(NotFound):
        await store.update("gone", START, START + timedelta(minutes=30))
    with pytest.raises(NotFound):
        await store.delete("gone")
    assert await store.get("gone") is None


@pytest.mark.anyio
async def test_get_treats_cancelled_events_as_missing_and_errors_as_upstream():
    client = DummyGoogleClient()
    store = _store(client)
    assert (await store.get("evt-google-1"))["id"] == "evt-google-1"

    client.event = {"id": "evt-google-1", "status": "cancelled"}
    assert await store.get("evt-google-1") is None

    client.get_status = 503
    with pytest.raises(UpstreamUnavailable):
        await store.get("evt-google-1")


@pytest.mark.anyio
async def test_stub_store_counts_its_own_events_as_busy():
    store = StubCalendarStore()
    created = await store.create(_spec())

    busy = await store.query(START - timedelta(hours=1), START + timedelta(hours=1), "Europe/London")
    assert busy == [Interval(start=START, end=START + timedelta(minutes=30))]

    await store.delete(created.event_id)
    assert await store.get(created.event_id) is None
    with pytest.raises(NotFound):
        await store.delete(created.event_id)
