import threading
from datetime import datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

from voxan.errors import PersistenceError
from voxan.repositories import InMemoryCallRepository, InMemoryLeadRepository
from voxan.services.correlator import CallEvent, CallLeadCorrelator


class FailingCalls(InMemoryCallRepository):
    def create(self, **kwargs):
        raise PersistenceError("calls table unavailable")

    def update(self, vapi_call_id, **kwargs):
        raise PersistenceError("calls table unavailable")


def _correlator(calls=None, leads=None):
    calls = calls or InMemoryCallRepository()
    leads = leads or InMemoryLeadRepository()
    return CallLeadCorrelator(calls, leads), calls, leads


def test_call_started_then_ended_updates_the_row():
    correlator, calls, _ = _correlator()

    started = correlator.on_call_started(
        CallEvent(vapi_call_id="vapi-1", assistant_id="asst", phone_number="+447700900123")
    )
    assert started.status == "in-progress"

    ended = correlator.on_call_ended(
        CallEvent(
            vapi_call_id="vapi-1",
            status="completed",
            duration=61.6,
            cost="0.35",
            success=True,
            outcome="Booked for Tuesday",
        )
    )
    assert ended.status == "completed"
    assert ended.duration == 62
    assert ended.cost == Decimal("0.35")
    assert ended.success is True
    assert ended.outcome == "Booked for Tuesday"
    assert calls.get_by_vapi_id("vapi-1") is ended


def test_call_lifecycle_persistence_failures_are_swallowed(caplog):
    correlator, _, _ = _correlator(calls=FailingCalls())

    assert correlator.on_call_started(CallEvent(vapi_call_id="vapi-2")) is None
    assert correlator.on_call_ended(CallEvent(vapi_call_id="vapi-2", status="completed")) is None

    messages = {r.getMessage() for r in caplog.records}
    assert "call_started_persist_failed" in messages
    assert "call_ended_persist_failed" in messages


def test_call_ended_for_unknown_call_is_logged(caplog):
    correlator, _, _ = _correlator()
    assert correlator.on_call_ended(CallEvent(vapi_call_id="never-started")) is None
    assert any(r.getMessage() == "call_ended_unknown_call" for r in caplog.records)


def test_transcript_and_callback_are_stored():
    correlator, calls, _ = _correlator()
    correlator.on_call_started(CallEvent(vapi_call_id="vapi-3"))

    assert correlator.on_transcript("vapi-3", "") is None
    correlator.on_transcript("vapi-3", "I'd like a demo please")
    when = datetime(2025, 3, 5, 14, tzinfo=ZoneInfo("Europe/London"))
    correlator.save_callback_time("vapi-3", when)

    call = calls.get_by_vapi_id("vapi-3")
    assert call.transcript == "I'd like a demo please"
    assert call.callback_requested == when
    assert correlator.find_call("vapi-3") is call
    assert correlator.find_call(None) is None


def test_new_lead_has_contact_count_one():
    correlator, _, _ = _correlator()
    lead, is_new = correlator.upsert_lead(phone="+447700900123", name="Sarah", source="vapi_booking")

    assert is_new is True
    assert lead.contact_count == 1
    assert lead.source == "vapi_booking"


def test_upsert_merges_without_clobbering():
    correlator, _, leads = _correlator()
    correlator.upsert_lead(phone="+447700900123", name="Sarah", email="   ")

    lead, is_new = correlator.upsert_lead(
        phone="+447700900123",
        name="Not Sarah",
        email="sarah@smiles.co.uk",
        practice_name="Smiles Dental",
    )

    assert is_new is False
    assert lead.contact_count == 2
    assert lead.name == "Sarah"
    assert lead.email == "sarah@smiles.co.uk"
    assert lead.practice_name == "Smiles Dental"
    assert correlator.practice_info("+447700900123") is leads.get_by_phone("+447700900123")
    assert correlator.practice_info("+447700900000") is None


def test_concurrent_upserts_for_one_phone_create_a_single_lead():
    correlator, _, leads = _correlator()
    results = []

    def book():
        results.append(correlator.upsert_lead(phone="+447700900123", source="vapi_booking"))

    threads = [threading.Thread(target=book) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for _, is_new in results if is_new) == 1
    assert leads.get_by_phone("+447700900123").contact_count == 8
