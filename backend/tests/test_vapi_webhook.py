import hashlib
import hmac
import json
import typing
from datetime import UTC, datetime

import pytest
from fastapi.testclient import TestClient

from voxan import webhooks
from voxan.config import AppSettings, SmsSettings, VapiSettings
from voxan.deps import build_services
from voxan.errors import PersistenceError
from voxan.main import create_app
from voxan.routers import vapi as vapi_routes
from voxan.services.calendar import StubCalendarStore

OWNER_PHONE = "+447700900999"


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings(sms=SmsSettings(owner_number=OWNER_PHONE))


def _function_call(name, parameters, call_id="vapi-call-1"):
    return {
        "message": {
            "type": "function-call",
            "functionCall": {"name": name, "parameters": parameters},
        },
        "call": {"id": call_id, "assistantId": "asst-1"},
    }


def _booking_params(**overrides):
    params = {
        "name": "Sarah Jones",
        "practice": "Smiles Dental",
        "phone": "07700 900123",
        "email": "sarah@smiles.co.uk",
        "datetime": "2025-03-04T10:00:00",
        "notes": "Two chairs",
    }
    params.update(overrides)
    return params


def _variants(union_alias):
    union = typing.get_args(union_alias)[0]
    return {typing.get_args(member)[0] for member in typing.get_args(union)}


def test_every_payload_variant_has_a_handler():
    assert _variants(webhooks.FunctionCall) == set(vapi_routes.FUNCTION_HANDLERS)
    message_variants = _variants(webhooks.Message) - {webhooks.FunctionCallMessage}
    assert message_variants == set(vapi_routes.MESSAGE_HANDLERS)
    assert set(webhooks.KNOWN_FUNCTIONS.values()) < set(vapi_routes.FUNCTION_HANDLERS)


def test_call_started_and_ended_are_recorded(client, services):
    resp = client.post(
        "/webhook/vapi",
        json={
            "message": {"type": "call-started"},
            "call": {"id": "vapi-call-1", "assistantId": "asst-1", "customer": {"number": "+447700900123"}},
        },
    )
    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    assert services.calls_repo.get_by_vapi_id("vapi-call-1").status == "in-progress"

    resp = client.post(
        "/webhook/vapi",
        json={
            "message": {"type": "call-ended"},
            "call": {
                "id": "vapi-call-1",
                "status": "completed",
                "duration": 42,
                "cost": 0.12,
                "analysis": {"successEvaluation": "false", "summary": "Not interested yet"},
            },
        },
    )
    assert resp.status_code == 200
    call = services.calls_repo.get_by_vapi_id("vapi-call-1")
    assert call.status == "completed"
    assert call.success is False
    assert call.outcome == "Not interested yet"

    # No booking came out of the call, so the owner hears about it.
    alerts = [m for m in services.sms.sent_messages if m.to == OWNER_PHONE]
    assert len(alerts) == 1
    assert "Missed opportunity" in alerts[0].body


def test_voicemail_call_sends_voicemail_alert_instead_of_missed_call(client, services):
    client.post(
        "/webhook/vapi",
        json={
            "message": {"type": "call-started"},
            "call": {"id": "vapi-call-2", "customer": {"number": "+447700900123"}},
        },
    )
    resp = client.post(
        "/webhook/vapi",
        json={
            "message": {"type": "call-ended"},
            "call": {"id": "vapi-call-2", "status": "voicemail", "duration": 20},
        },
    )

    assert resp.status_code == 200
    assert services.calls_repo.get_by_vapi_id("vapi-call-2").status == "voicemail"
    alerts = [m for m in services.sms.sent_messages if m.to == OWNER_PHONE]
    assert len(alerts) == 1
    assert alerts[0].body.startswith("Voicemail received from +447700900123")
    assert not any("Missed opportunity" in m.body for m in services.sms.sent_messages)


def test_book_appointment_confirms_and_notifies(client, services):
    client.post("/webhook/vapi", json={"message": {"type": "call-started"}, "call": {"id": "vapi-call-1"}})

    resp = client.post("/webhook/vapi", json=_function_call("bookAppointment", _booking_params()))

    assert resp.status_code == 200
    assert resp.json() == {
        "result": "Appointment booked successfully for Tuesday, March 4 at 10:00 AM. "
        "Calendar invite sent to sarah@smiles.co.uk."
    }
    call = services.calls_repo.get_by_vapi_id("vapi-call-1")
    appts = services.appointments_repo.list_for_call(call.id)
    assert len(appts) == 1
    assert appts[0].phone == "+447700900123"

    recipients = [m.to for m in services.sms.sent_messages]
    assert recipients == ["+447700900123", OWNER_PHONE]
    assert "confirmed for Tuesday 4 March at 10:00" in services.sms.sent_messages[0].body
    assert "HOT LEAD" in services.sms.sent_messages[1].body


def test_invalid_phone_is_reported_without_side_effects(client, services, calendar):
    resp = client.post("/webhook/vapi", json=_function_call("bookAppointment", _booking_params(phone="123")))

    assert resp.json() == {
        "result": "Error: Please provide a valid UK phone number starting with +44"
    }
    assert calendar.events == {}
    assert services.leads_repo.get_by_phone("123") is None
    assert services.sms.sent_messages == []


def test_missing_parameters_get_a_spoken_error(client):
    resp = client.post("/webhook/vapi", json=_function_call("bookAppointment", {"name": "Sarah"}))
    assert resp.status_code == 200
    assert resp.json()["result"].startswith("Error: I'm missing some details for bookAppointment")


def test_unknown_function_and_message_are_explicit(client, caplog):
    resp = client.post("/webhook/vapi", json=_function_call("orderPizza", {}))
    assert resp.json() == {"result": "Function orderPizza not implemented"}
    assert any(r.getMessage() == "vapi_function_not_implemented" for r in caplog.records)

    resp = client.post("/webhook/vapi", json={"message": {"type": "speech-update"}})
    assert resp.json() == {"received": True}


def test_reschedule_and_cancel_through_the_webhook(client, services, calendar):
    client.post("/webhook/vapi", json=_function_call("bookAppointment", _booking_params()))
    appt = services.appointments_repo.list_since(datetime(2000, 1, 1, tzinfo=UTC))[0]

    resp = client.post(
        "/webhook/vapi",
        json=_function_call(
            "rescheduleAppointment",
            {"appointmentId": appt.id, "datetime": "2025-03-04T14:00:00"},
        ),
    )
    assert resp.json() == {"result": "Done. The appointment is now on Tuesday, March 4 at 2:00 PM."}

    for _ in range(2):
        resp = client.post(
            "/webhook/vapi",
            json=_function_call("cancelAppointment", {"appointmentId": appt.id}),
        )
        assert resp.json() == {"result": "The appointment has been cancelled."}
    assert services.appointments_repo.get(appt.id).status == "cancelled"
    assert calendar.events == {}


def test_practice_info_and_callback_time(client, services):
    resp = client.post("/webhook/vapi", json=_function_call("getPracticeInfo", {"phone": "+447700900123"}))
    assert resp.json() == {"result": "No previous contact found. This is a new lead."}

    client.post("/webhook/vapi", json={"message": {"type": "call-started"}, "call": {"id": "vapi-call-1"}})
    client.post("/webhook/vapi", json=_function_call("bookAppointment", _booking_params()))

    resp = client.post("/webhook/vapi", json=_function_call("getPracticeInfo", {"phone": "07700900123"}))
    assert resp.json()["result"].startswith(
        "Lead found: Sarah Jones from Smiles Dental. Status: contacted."
    )

    resp = client.post(
        "/webhook/vapi",
        json=_function_call("saveCallbackTime", {"datetime": "2025-03-05T15:30:00"}),
    )
    assert resp.json() == {"result": "Noted: Call back requested for Wednesday, March 5 at 3:30 PM."}
    assert services.calls_repo.get_by_vapi_id("vapi-call-1").callback_requested is not None


def test_unexpected_errors_become_retry_prompts(client, services, monkeypatch):
    async def boom(**kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(services.availability, "check_availability", boom)
    resp = client.post("/webhook/vapi", json=_function_call("checkAvailability", {}))
    assert resp.json() == {
        "result": "Error: boom. Please try again or ask the caller to try later."
    }


def test_check_availability_lists_slots(client):
    resp = client.post("/webhook/vapi", json=_function_call("checkAvailability", {"daysAhead": 5}))
    assert resp.json()["result"].startswith("Available slots: ")


def test_transcript_failures_surface_as_server_errors(client, services, monkeypatch):
    def fail(vapi_call_id, transcript):
        raise PersistenceError("calls table unavailable")

    monkeypatch.setattr(services.correlator, "on_transcript", fail)
    resp = client.post(
        "/webhook/vapi",
        json={"message": {"type": "transcript", "transcript": "hello"}, "call": {"id": "vapi-call-1"}},
    )
    assert resp.status_code == 500
    assert resp.json() == {"error": "calls table unavailable"}


def test_signatures_are_enforced_when_enabled():
    settings = AppSettings(vapi=VapiSettings(verify_signatures=True, webhook_secret="s3cret"))
    services = build_services(settings, calendar=StubCalendarStore())
    client = TestClient(create_app(services=services))
    body = json.dumps({"message": {"type": "call-started"}, "call": {"id": "vapi-signed"}}).encode()

    assert client.post("/webhook/vapi", content=body).status_code == 401
    assert (
        client.post("/webhook/vapi", content=body, headers={"x-vapi-signature": "bad"}).status_code
        == 401
    )

    signature = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
    resp = client.post(
        "/webhook/vapi",
        content=body,
        headers={"x-vapi-signature": signature, "content-type": "application/json"},
    )
    assert resp.status_code == 200
    assert services.calls_repo.get_by_vapi_id("vapi-signed") is not None
