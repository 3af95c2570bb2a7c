from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from ..config import VapiSettings
from ..errors import PersistenceError, UpstreamUnavailable, ValidationError
from ..models import CALL_OUTBOUND
from ..validators import normalize_phone

logger = logging.getLogger(__name__)


@dataclass
class OutboundCallResult:
    call_id: str
    status: str | None
    assistant_id: str | None
    phone: str


class OutboundCallService:
    """Starts outbound calls through the VAPI REST API."""

    def __init__(
        self,
        settings: VapiSettings,
        calls_repo,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._calls = calls_repo
        self._transport = transport

    async def trigger(
        self,
        phone: str | None,
        assistant_id: str | None = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> OutboundCallResult:
        number = normalize_phone(phone)
        if not number:
            raise ValidationError("Phone number required")
        if not self._settings.api_key:
            raise UpstreamUnavailable("VAPI_KEY not configured")

        payload = {
            "assistantId": assistant_id,
            "phoneNumberId": self._settings.phone_number_id,
            "customer": {"number": number, **(metadata or {})},
        }
        headers = {"Authorization": f"Bearer {self._settings.api_key}"}
        try:
            async with httpx.AsyncClient(
                base_url=self._settings.api_base,
                timeout=10.0,
                transport=self._transport,
            ) as client:
                resp = await client.post("/call", json=payload, headers=headers)
                resp.raise_for_status()
                body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "outbound_call_failed",
                extra={"phone": number, "error": exc.__class__.__name__},
            )
            raise UpstreamUnavailable("I couldn't start the outbound call.") from exc

        call_id = body.get("id")
        if not call_id:
            raise UpstreamUnavailable("The voice provider did not return a call id.")

        try:
            self._calls.create(
                vapi_call_id=call_id,
                assistant_id=body.get("assistantId") or assistant_id,
                phone_number=number,
                customer_name=(metadata or {}).get("name"),
                status=CALL_OUTBOUND,
            )
        except PersistenceError:
            logger.warning(
                "outbound_call_persist_failed",
                exc_info=True,
                extra={"vapi_call_id": call_id},
            )

        logger.info("outbound_call_started", extra={"vapi_call_id": call_id})
        return OutboundCallResult(
            call_id=call_id,
            status=body.get("status"),
            assistant_id=body.get("assistantId") or assistant_id,
            phone=number,
        )
