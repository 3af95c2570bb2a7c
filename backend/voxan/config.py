from __future__ import annotations

import os
from functools import lru_cache
import logging

from pydantic import BaseModel


class CalendarSettings(BaseModel):
    calendar_id: str = "primary"
    client_email: str | None = None
    private_key: str | None = None
    credentials_file: str | None = None
    use_stub: bool = True
    timezone: str = "Europe/London"
    # Business hours in the calendar timezone.
    open_hour: int = 9
    close_hour: int = 17
    lunch_start_hour: int = 12
    lunch_end_hour: int = 13
    closed_days: str = "Sat,Sun"
    min_lead_minutes: int = 5
    slot_step_minutes: int = 60
    days_ahead: int = 5
    max_slots: int = 6


class BookingSettings(BaseModel):
    duration_minutes: int = 30
    phone_pattern: str = r"^\+44[1-9]\d{9}$"
    email_pattern: str = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"
    attendees: list[str] = []
    compensate_partial_failures: bool = False
    lead_source: str = "vapi_booking"


class SmsSettings(BaseModel):
    provider: str = "stub"  # "stub" or "twilio"
    from_number: str | None = None
    owner_number: str | None = None
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None


class VapiSettings(BaseModel):
    api_key: str | None = None
    api_base: str = "https://api.vapi.ai"
    phone_number_id: str | None = None
    webhook_secret: str = "voxan-secret"
    verify_signatures: bool = False


class DatabaseSettings(BaseModel):
    url: str = "sqlite:///./voxan.db"
    use_db_store: bool = False


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class AppSettings(BaseModel):
    calendar: CalendarSettings = CalendarSettings()
    booking: BookingSettings = BookingSettings()
    sms: SmsSettings = SmsSettings()
    vapi: VapiSettings = VapiSettings()
    database: DatabaseSettings = DatabaseSettings()

    @classmethod
    def from_env(cls) -> "AppSettings":
        """Load settings from environment variables with safe defaults."""
        private_key = os.getenv("GOOGLE_PRIVATE_KEY")
        if private_key:
            # Keys pasted into env files usually carry escaped newlines.
            private_key = private_key.replace("\\n", "\n")
        calendar = CalendarSettings(
            calendar_id=os.getenv("GOOGLE_CALENDAR_ID", "primary"),
            client_email=os.getenv("GOOGLE_CLIENT_EMAIL"),
            private_key=private_key,
            credentials_file=os.getenv("GOOGLE_CALENDAR_CREDENTIALS_FILE"),
            use_stub=os.getenv("CALENDAR_USE_STUB", "true").lower() != "false",
            timezone=os.getenv("CALENDAR_TIMEZONE", "Europe/London"),
            open_hour=_int_env("BUSINESS_OPEN_HOUR", 9),
            close_hour=_int_env("BUSINESS_CLOSE_HOUR", 17),
            lunch_start_hour=_int_env("BUSINESS_LUNCH_START_HOUR", 12),
            lunch_end_hour=_int_env("BUSINESS_LUNCH_END_HOUR", 13),
            closed_days=os.getenv("BUSINESS_CLOSED_DAYS", "Sat,Sun"),
            min_lead_minutes=_int_env("SLOT_MIN_LEAD_MINUTES", 5),
            days_ahead=_int_env("SLOT_DAYS_AHEAD", 5),
            max_slots=_int_env("SLOT_MAX_RESULTS", 6),
        )
        booking = BookingSettings(
            duration_minutes=_int_env("APPOINTMENT_DURATION_MINUTES", 30),
            phone_pattern=os.getenv("BOOKING_PHONE_PATTERN", r"^\+44[1-9]\d{9}$"),
            attendees=[
                a.strip()
                for a in (os.getenv("BOOKING_ATTENDEES", "") or "").split(",")
                if a.strip()
            ],
            compensate_partial_failures=os.getenv(
                "BOOKING_COMPENSATE_PARTIAL_FAILURES", "false"
            ).lower()
            == "true",
        )
        sms = SmsSettings(
            provider=os.getenv("SMS_PROVIDER", "stub"),
            from_number=os.getenv("TWILIO_PHONE_NUMBER"),
            owner_number=os.getenv("OWNER_PHONE"),
            twilio_account_sid=os.getenv("TWILIO_SID"),
            twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN"),
        )
        vapi = VapiSettings(
            api_key=os.getenv("VAPI_KEY"),
            api_base=os.getenv("VAPI_API_BASE", "https://api.vapi.ai"),
            phone_number_id=os.getenv("VAPI_PHONE_NUMBER_ID"),
            webhook_secret=os.getenv("WEBHOOK_SECRET", "voxan-secret"),
            verify_signatures=os.getenv("VAPI_VERIFY_SIGNATURES", "false").lower()
            == "true",
        )
        database = DatabaseSettings(
            url=os.getenv("DATABASE_URL", "sqlite:///./voxan.db"),
            use_db_store=os.getenv("USE_DB_STORE", "false").lower() == "true",
        )
        return cls(
            calendar=calendar,
            booking=booking,
            sms=sms,
            vapi=vapi,
            database=database,
        )

    def validate_combinations(self) -> None:
        """Warn when non-stub providers are misconfigured to avoid runtime surprises."""
        logger = logging.getLogger(__name__)
        warnings: list[str] = []

        if not self.calendar.use_stub:
            has_inline = bool(self.calendar.client_email and self.calendar.private_key)
            if not (has_inline or self.calendar.credentials_file):
                warnings.append(
                    "Google Calendar requires GOOGLE_CLIENT_EMAIL and GOOGLE_PRIVATE_KEY "
                    "or GOOGLE_CALENDAR_CREDENTIALS_FILE when CALENDAR_USE_STUB=false."
                )
        if self.calendar.close_hour <= self.calendar.open_hour:
            warnings.append("BUSINESS_CLOSE_HOUR must be after BUSINESS_OPEN_HOUR.")
        if self.sms.provider == "twilio":
            if not (self.sms.twilio_account_sid and self.sms.twilio_auth_token):
                warnings.append(
                    "Twilio provider requires TWILIO_SID and TWILIO_AUTH_TOKEN."
                )
        if self.vapi.verify_signatures and self.vapi.webhook_secret == "voxan-secret":
            warnings.append(
                "WEBHOOK_SECRET is still the default while signatures are enforced."
            )
        if warnings:
            for msg in warnings:
                logger.warning("configuration_warning", extra={"detail": msg})


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Return application settings loaded from the environment.

    The result is cached for the lifetime of the process so configuration
    is stable and we avoid repeatedly parsing environment variables.
    """
    settings = AppSettings.from_env()
    settings.validate_combinations()
    return settings
