from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Tuple

from ..errors import PersistenceError
from ..models import CALL_IN_PROGRESS, Call, Lead

logger = logging.getLogger(__name__)


@dataclass
class CallEvent:
    """Provider-neutral view of a call as reported by a lifecycle webhook."""

    vapi_call_id: str
    assistant_id: str | None = None
    phone_number: str | None = None
    customer_name: str | None = None
    status: str | None = None
    duration: int | float | None = None
    cost: Any = None
    success: bool = False
    outcome: str | None = None
    recording_url: str | None = None


def _as_cost(raw: Any) -> Decimal | None:
    if raw is None:
        return None
    try:
        cost = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    return cost if cost >= 0 else Decimal("0")


def _as_duration(raw: int | float | None) -> int | None:
    if raw is None:
        return None
    return max(0, int(round(raw)))


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class CallLeadCorrelator:
    """Keeps call rows and leads in step with call lifecycle events."""

    def __init__(self, calls_repo, leads_repo) -> None:
        self._calls = calls_repo
        self._leads = leads_repo

    def on_call_started(self, event: CallEvent) -> Optional[Call]:
        logger.info(
            "call_started",
            extra={"vapi_call_id": event.vapi_call_id, "assistant_id": event.assistant_id},
        )
        try:
            return self._calls.create(
                vapi_call_id=event.vapi_call_id,
                assistant_id=event.assistant_id,
                phone_number=event.phone_number,
                customer_name=event.customer_name,
                status=CALL_IN_PROGRESS,
            )
        except PersistenceError:
            # Never block a live call on telemetry.
            logger.warning(
                "call_started_persist_failed",
                exc_info=True,
                extra={"vapi_call_id": event.vapi_call_id},
            )
            return None

    def on_call_ended(self, event: CallEvent) -> Optional[Call]:
        logger.info(
            "call_ended",
            extra={"vapi_call_id": event.vapi_call_id, "status": event.status},
        )
        try:
            updated = self._calls.update(
                event.vapi_call_id,
                status=event.status,
                duration=_as_duration(event.duration),
                cost=_as_cost(event.cost),
                success=event.success,
                outcome=event.outcome,
                recording_url=event.recording_url,
            )
        except PersistenceError:
            logger.warning(
                "call_ended_persist_failed",
                exc_info=True,
                extra={"vapi_call_id": event.vapi_call_id},
            )
            return None
        if updated is None:
            logger.warning(
                "call_ended_unknown_call", extra={"vapi_call_id": event.vapi_call_id}
            )
        return updated

    def on_transcript(self, vapi_call_id: str, transcript: str | None) -> Optional[Call]:
        if not transcript:
            return None
        return self._calls.update(vapi_call_id, transcript=transcript)

    def save_callback_time(self, vapi_call_id: str, when: datetime) -> Optional[Call]:
        return self._calls.update(vapi_call_id, callback_requested=when)

    def find_call(self, vapi_call_id: str | None) -> Optional[Call]:
        if not vapi_call_id:
            return None
        return self._calls.get_by_vapi_id(vapi_call_id)

    def practice_info(self, phone: str) -> Optional[Lead]:
        return self._leads.get_by_phone(phone)

    def upsert_lead(
        self,
        phone: str,
        email: str | None = None,
        name: str | None = None,
        practice_name: str | None = None,
        address: str | None = None,
        city: str | None = None,
        source: str = "vapi_call",
    ) -> Tuple[Lead, bool]:
        """Create or touch the lead for `phone` (already normalized).

        Existing populated fields are never overwritten; only empty ones are
        filled from the supplied values.
        """
        lead, is_new = self._leads.upsert(
            phone=phone,
            email=_blank_to_none(email),
            name=_blank_to_none(name),
            practice_name=_blank_to_none(practice_name),
            address=_blank_to_none(address),
            city=_blank_to_none(city),
            source=source,
        )
        logger.info(
            "lead_upserted",
            extra={
                "lead_id": lead.id,
                "is_new": is_new,
                "contact_count": lead.contact_count,
            },
        )
        return lead, is_new
