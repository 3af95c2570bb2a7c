import logging

from voxan.config import AppSettings, get_settings


def test_config_validation_emits_warnings_for_misconfig(monkeypatch, caplog):
    caplog.set_level(logging.WARNING)
    monkeypatch.setenv("SMS_PROVIDER", "twilio")
    monkeypatch.delenv("TWILIO_SID", raising=False)
    monkeypatch.delenv("TWILIO_AUTH_TOKEN", raising=False)
    monkeypatch.setenv("CALENDAR_USE_STUB", "false")
    monkeypatch.delenv("GOOGLE_CLIENT_EMAIL", raising=False)
    monkeypatch.delenv("GOOGLE_PRIVATE_KEY", raising=False)
    monkeypatch.delenv("GOOGLE_CALENDAR_CREDENTIALS_FILE", raising=False)
    monkeypatch.setenv("VAPI_VERIFY_SIGNATURES", "true")
    monkeypatch.delenv("WEBHOOK_SECRET", raising=False)

    _ = get_settings()

    warning_details = [
        getattr(rec, "detail", rec.message)
        for rec in caplog.records
        if rec.levelno >= logging.WARNING
    ]
    assert any("Twilio provider requires TWILIO_SID" in m for m in warning_details)
    assert any("GOOGLE_PRIVATE_KEY" in m for m in warning_details)
    assert any("WEBHOOK_SECRET is still the default" in m for m in warning_details)


def test_stub_configuration_is_quiet(monkeypatch, caplog):
    caplog.set_level(logging.INFO)
    monkeypatch.setenv("SMS_PROVIDER", "stub")
    monkeypatch.setenv("CALENDAR_USE_STUB", "true")
    monkeypatch.delenv("VAPI_VERIFY_SIGNATURES", raising=False)
    monkeypatch.delenv("BUSINESS_OPEN_HOUR", raising=False)
    monkeypatch.delenv("BUSINESS_CLOSE_HOUR", raising=False)

    _ = get_settings()

    warning_msgs = [rec for rec in caplog.records if rec.levelno >= logging.WARNING]
    assert not warning_msgs, "No warnings expected for stub configuration"


def test_get_settings_is_cached(monkeypatch):
    monkeypatch.setenv("GOOGLE_CALENDAR_ID", "first@voxan.ai")
    first = get_settings()
    monkeypatch.setenv("GOOGLE_CALENDAR_ID", "second@voxan.ai")
    assert get_settings() is first
    assert first.calendar.calendar_id == "first@voxan.ai"


def test_from_env_reads_booking_values(monkeypatch) -> None:
    monkeypatch.setenv("GOOGLE_PRIVATE_KEY", "-----BEGIN-----\\nabc\\n-----END-----")
    monkeypatch.setenv("BOOKING_ATTENDEES", "owner@voxan.ai, ,sales@voxan.ai")
    monkeypatch.setenv("BOOKING_COMPENSATE_PARTIAL_FAILURES", "TRUE")
    monkeypatch.setenv("USE_DB_STORE", "true")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///./other.db")

    settings = AppSettings.from_env()

    assert settings.calendar.private_key == "-----BEGIN-----\nabc\n-----END-----"
    assert settings.booking.attendees == ["owner@voxan.ai", "sales@voxan.ai"]
    assert settings.booking.compensate_partial_failures is True
    assert settings.database.use_db_store is True
    assert settings.database.url == "sqlite:///./other.db"


def test_from_env_handles_invalid_business_hours(monkeypatch) -> None:
    monkeypatch.setenv("BUSINESS_OPEN_HOUR", "not-a-number")
    monkeypatch.setenv("BUSINESS_CLOSE_HOUR", "also-bad")
    monkeypatch.setenv("SLOT_MAX_RESULTS", "")
    settings = AppSettings.from_env()
    assert settings.calendar.open_hour == 9
    assert settings.calendar.close_hour == 17
    assert settings.calendar.max_slots == 6
