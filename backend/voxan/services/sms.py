from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from zoneinfo import ZoneInfo

import httpx

from ..config import SmsSettings
from .dashboard import ConversionMetrics

logger = logging.getLogger(__name__)


@dataclass
class SentMessage:
    to: str
    body: str
    category: str | None = None  # "owner", "customer", or None


class SmsService:
    """Abstraction for SMS notifications.

    Defaults to stub mode (recording messages in-memory). When configured with
    SMS_PROVIDER=twilio and valid credentials, it will attempt to call Twilio's
    SMS API; failures are logged and never reach the caller.
    """

    def __init__(self, settings: SmsSettings, timezone: str = "Europe/London") -> None:
        self._settings = settings
        self._timezone = timezone
        self._sent: List[SentMessage] = []

    @property
    def owner_number(self) -> Optional[str]:
        return self._settings.owner_number

    @property
    def sent_messages(self) -> List[SentMessage]:
        # Exposed primarily for tests and debugging.
        return list(self._sent)

    async def send_sms(self, to: str, body: str, category: str | None = None) -> bool:
        # Always record locally for observability/tests.
        self._sent.append(SentMessage(to=to, body=body, category=category))

        if self._settings.provider != "twilio":
            logger.info("sms_stub_recorded", extra={"to": to, "category": category})
            return True

        sid = self._settings.twilio_account_sid
        token = self._settings.twilio_auth_token
        from_number = self._settings.from_number
        if not sid or not token or not from_number:
            logger.warning("sms_twilio_not_configured", extra={"to": to})
            return False

        url = f"https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"
        data = {"From": from_number, "To": to, "Body": body}
        try:
            async with httpx.AsyncClient(timeout=10.0, auth=(sid, token)) as client:
                resp = await client.post(url, data=data)
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "sms_send_failed",
                extra={"to": to, "category": category, "error": exc.__class__.__name__},
            )
            return False
        return True

    async def notify_owner(self, body: str) -> bool:
        if not self.owner_number:
            return False
        return await self.send_sms(self.owner_number, body, category="owner")

    async def notify_customer(self, to: str | None, body: str) -> bool:
        if not to:
            return False
        return await self.send_sms(to, body, category="customer")

    def _local(self, when: datetime) -> datetime:
        return when.astimezone(ZoneInfo(self._timezone))

    async def send_booking_confirmation(
        self, phone: str, name: str, when: datetime
    ) -> bool:
        local = self._local(when)
        day = f"{local.strftime('%A')} {local.day} {local.strftime('%B')}"
        body = (
            f"Hi {name}, your VoxAn demo is confirmed for {day} at "
            f"{local.strftime('%H:%M')}. You'll receive a calendar invite shortly. "
            "Questions? Reply to this number. - VoxAn Team"
        )
        return await self.notify_customer(phone, body)

    async def send_hot_lead_alert(
        self,
        *,
        name: str,
        practice: str | None,
        phone: str,
        email: str | None,
        when: datetime,
    ) -> bool:
        local = self._local(when)
        body = (
            "HOT LEAD!\n\n"
            f"{name}\n{practice or '-'}\n"
            f"Phone: {phone}\nEmail: {email or '-'}\n\n"
            f"Booked: {local.strftime('%a %d %b %H:%M')}\n\n"
            "AI detected strong interest. Follow up ASAP!"
        )
        return await self.notify_owner(body)

    async def send_missed_call_alert(
        self, phone: str, name: str | None, transcript: str | None
    ) -> bool:
        snippet = f"{transcript[:80]}..." if transcript else "N/A"
        body = (
            "Missed opportunity\n\n"
            f"{name or 'Unknown caller'} ({phone})\n"
            "Didn't complete booking.\n\n"
            f'Last said: "{snippet}"\n\n'
            "Call back?"
        )
        return await self.notify_owner(body)

    async def send_voicemail_alert(self, phone: str, transcript: str | None) -> bool:
        snippet = transcript[:100] if transcript else "No transcription"
        body = (
            f"Voicemail received from {phone}\n\n"
            f'"{snippet}..."\n\n'
            "Check dashboard for full recording."
        )
        return await self.notify_owner(body)

    async def send_appointment_reminder(
        self, phone: str, name: str, practice: str | None, when: datetime
    ) -> bool:
        local = self._local(when)
        body = (
            f"Hi {name}, reminder: Your VoxAn demo with {practice or 'us'} is today "
            f"at {local.strftime('%H:%M')}. See you then!"
        )
        return await self.notify_customer(phone, body)

    async def send_daily_summary(
        self, metrics: ConversionMetrics, hot_leads: int = 0, followups: int = 0
    ) -> bool:
        body = (
            "VoxAn Daily Report\n\n"
            f"Calls: {metrics.totalCalls}\n"
            f"Successful: {metrics.successfulCalls}\n"
            f"Bookings: {metrics.bookings}\n"
            f"Cost: ${metrics.totalCost:.2f}\n\n"
            f"Hot leads: {hot_leads}\n"
            f"Follow-ups needed: {followups}\n\n"
            "Keep going!"
        )
        return await self.notify_owner(body)
