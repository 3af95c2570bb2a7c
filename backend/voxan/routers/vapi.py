from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PayloadValidationError

from ..deps import Services, get_services
from ..errors import BookingError, ValidationError
from ..models import CALL_VOICEMAIL, SlotCandidate, ensure_aware
from ..services.appointments import Contact, PracticeInfo
from ..validators import normalize_phone
from ..webhooks import (
    BookAppointmentCall,
    CallEndedMessage,
    CallInfo,
    CallStartedMessage,
    CancelAppointmentCall,
    CheckAvailabilityCall,
    FunctionCallMessage,
    GetPracticeInfoCall,
    RescheduleAppointmentCall,
    SaveCallbackTimeCall,
    TranscriptMessage,
    UnknownFunctionCall,
    UnknownMessage,
    VapiWebhook,
)

logger = logging.getLogger(__name__)
router = APIRouter()

RETRY_SUFFIX = "Please try again or ask the caller to try later."

FunctionHandler = Callable[[Any, Optional[CallInfo], Services], Awaitable[str]]
MessageHandler = Callable[[Any, Optional[CallInfo], Services], Awaitable[None]]


def _verify_signature(request: Request, body: bytes, services: Services) -> None:
    """Check the x-vapi-signature header when signatures are enforced.

    The signature is a hex HMAC-SHA256 of the raw request body keyed with
    WEBHOOK_SECRET.
    """
    vapi_cfg = services.settings.vapi
    if not vapi_cfg.verify_signatures:
        return
    signature = request.headers.get("x-vapi-signature")
    if not signature:
        logger.warning("vapi_signature_missing", extra={"path": str(request.url)})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature"
        )
    expected = hmac.new(
        vapi_cfg.webhook_secret.encode("utf-8"), body, hashlib.sha256
    ).hexdigest()
    if not hmac.compare_digest(expected, signature):
        logger.warning("vapi_signature_invalid", extra={"path": str(request.url)})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature"
        )


def _parse_when(raw: str, timezone: str) -> datetime:
    try:
        when = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        raise ValidationError("Please give the date and time again")
    if when.tzinfo is None:
        # Spoken times are local to the business.
        return when.replace(tzinfo=ZoneInfo(timezone))
    return when.astimezone(ZoneInfo(timezone))


def _spoken(when: datetime, services: Services) -> str:
    local = ensure_aware(when).astimezone(ZoneInfo(services.settings.calendar.timezone))
    return SlotCandidate(
        start=local,
        duration_minutes=services.settings.booking.duration_minutes,
        timezone=services.settings.calendar.timezone,
    ).display


# Function handlers ---------------------------------------------------------


async def _check_availability(
    fn: CheckAvailabilityCall, call: Optional[CallInfo], services: Services
) -> str:
    params = fn.parameters
    slots = await services.availability.check_availability(
        days_ahead=params.days_ahead,
        duration_minutes=params.duration_minutes or services.settings.booking.duration_minutes,
        timezone=params.timezone,
    )
    if not slots:
        return "I don't have any free slots in the coming days. Would you like a call back instead?"
    return "Available slots: " + "; ".join(s.display for s in slots)


async def _book_appointment(
    fn: BookAppointmentCall, call: Optional[CallInfo], services: Services
) -> str:
    params = fn.parameters
    timezone = services.settings.calendar.timezone
    phone = normalize_phone(params.phone) or ""
    slot = SlotCandidate(
        start=_parse_when(params.datetime, timezone),
        duration_minutes=services.settings.booking.duration_minutes,
        timezone=timezone,
    )
    appt = await services.lifecycle.book(
        slot,
        Contact(name=params.name, phone=phone, email=params.email),
        PracticeInfo(name=params.practice, notes=params.notes),
        vapi_call_id=call.id if call else None,
    )

    await services.sms.send_booking_confirmation(
        appt.phone, appt.customer_name, appt.appointment_time
    )
    await services.sms.send_hot_lead_alert(
        name=appt.customer_name,
        practice=appt.practice_name,
        phone=appt.phone,
        email=appt.email,
        when=appt.appointment_time,
    )
    return (
        f"Appointment booked successfully for {slot.display}. "
        f"Calendar invite sent to {appt.email}."
    )


async def _reschedule_appointment(
    fn: RescheduleAppointmentCall, call: Optional[CallInfo], services: Services
) -> str:
    params = fn.parameters
    new_start = _parse_when(params.datetime, services.settings.calendar.timezone)
    appt = await services.lifecycle.reschedule(params.appointment_id, new_start)
    return f"Done. The appointment is now on {_spoken(appt.appointment_time, services)}."


async def _cancel_appointment(
    fn: CancelAppointmentCall, call: Optional[CallInfo], services: Services
) -> str:
    await services.lifecycle.cancel(fn.parameters.appointment_id)
    return "The appointment has been cancelled."


async def _get_practice_info(
    fn: GetPracticeInfoCall, call: Optional[CallInfo], services: Services
) -> str:
    phone = normalize_phone(fn.parameters.phone) or fn.parameters.phone
    lead = services.correlator.practice_info(phone)
    if lead is None:
        return "No previous contact found. This is a new lead."
    last = ensure_aware(lead.last_contacted).date().isoformat()
    return (
        f"Lead found: {lead.name or 'unknown name'} from "
        f"{lead.practice_name or 'an unknown practice'}. Status: {lead.status}. "
        f"Last contacted: {last}."
    )


async def _save_callback_time(
    fn: SaveCallbackTimeCall, call: Optional[CallInfo], services: Services
) -> str:
    when = _parse_when(fn.parameters.datetime, services.settings.calendar.timezone)
    if call is None or services.correlator.save_callback_time(call.id, when) is None:
        logger.warning(
            "callback_time_unknown_call",
            extra={"vapi_call_id": call.id if call else None},
        )
    return f"Noted: Call back requested for {_spoken(when, services)}."


async def _unknown_function(
    fn: UnknownFunctionCall, call: Optional[CallInfo], services: Services
) -> str:
    logger.warning(
        "vapi_function_not_implemented",
        extra={"function": fn.name, "vapi_call_id": call.id if call else None},
    )
    return f"Function {fn.name} not implemented"


FUNCTION_HANDLERS: Dict[type, FunctionHandler] = {
    CheckAvailabilityCall: _check_availability,
    BookAppointmentCall: _book_appointment,
    RescheduleAppointmentCall: _reschedule_appointment,
    CancelAppointmentCall: _cancel_appointment,
    GetPracticeInfoCall: _get_practice_info,
    SaveCallbackTimeCall: _save_callback_time,
    UnknownFunctionCall: _unknown_function,
}


# Message handlers ----------------------------------------------------------


async def _call_started(
    message: CallStartedMessage, call: Optional[CallInfo], services: Services
) -> None:
    if call is None:
        logger.warning("vapi_call_started_without_call")
        return
    services.correlator.on_call_started(call.to_event())


async def _call_ended(
    message: CallEndedMessage, call: Optional[CallInfo], services: Services
) -> None:
    if call is None:
        logger.warning("vapi_call_ended_without_call")
        return
    ended = services.correlator.on_call_ended(call.to_event())
    if ended is None or ended.success or not ended.phone_number:
        return
    if ended.status == CALL_VOICEMAIL:
        await services.sms.send_voicemail_alert(ended.phone_number, ended.transcript)
        return
    if services.appointments_repo.list_for_call(ended.id):
        return
    await services.sms.send_missed_call_alert(
        ended.phone_number, ended.customer_name, ended.transcript
    )


async def _transcript(
    message: TranscriptMessage, call: Optional[CallInfo], services: Services
) -> None:
    if call is None:
        return
    services.correlator.on_transcript(call.id, message.transcript)


async def _unknown_message(
    message: UnknownMessage, call: Optional[CallInfo], services: Services
) -> None:
    logger.info(
        "vapi_message_ignored",
        extra={"type": message.type, "vapi_call_id": call.id if call else None},
    )


MESSAGE_HANDLERS: Dict[type, MessageHandler] = {
    CallStartedMessage: _call_started,
    CallEndedMessage: _call_ended,
    TranscriptMessage: _transcript,
    UnknownMessage: _unknown_message,
}


async def dispatch_function(
    fn: Any, call: Optional[CallInfo], services: Services
) -> str:
    """Run a function call and return the text the voice agent should say."""
    handler = FUNCTION_HANDLERS[type(fn)]
    logger.info(
        "vapi_function_called",
        extra={"function": fn.name, "vapi_call_id": call.id if call else None},
    )
    try:
        return await handler(fn, call, services)
    except BookingError as exc:
        logger.info(
            "vapi_function_failed",
            extra={"function": fn.name, "code": exc.code},
        )
        return f"Error: {exc.message}"
    except Exception as exc:
        logger.exception("vapi_function_error", extra={"function": fn.name})
        return f"Error: {exc}. {RETRY_SUFFIX}"


def _raw_function_name(raw: Any) -> str | None:
    if not isinstance(raw, dict):
        return None
    message = raw.get("message")
    if not isinstance(message, dict) or message.get("type") != "function-call":
        return None
    function_call = message.get("functionCall")
    if isinstance(function_call, dict):
        return str(function_call.get("name"))
    return None


@router.post("/webhook/vapi")
async def vapi_webhook(request: Request, services: Services = Depends(get_services)):
    body = await request.body()
    _verify_signature(request, body, services)

    try:
        raw = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")
    try:
        payload = VapiWebhook.model_validate(raw)
    except PayloadValidationError as exc:
        name = _raw_function_name(raw)
        logger.warning(
            "vapi_payload_invalid",
            extra={"function": name, "errors": exc.error_count()},
        )
        if name is not None:
            return {"result": f"Error: I'm missing some details for {name}. {RETRY_SUFFIX}"}
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    message = payload.message
    if isinstance(message, FunctionCallMessage):
        result = await dispatch_function(message.function_call, payload.call, services)
        return {"result": result}

    try:
        await MESSAGE_HANDLERS[type(message)](message, payload.call, services)
    except Exception as exc:
        logger.exception("vapi_webhook_error", extra={"type": message.type})
        return JSONResponse(status_code=500, content={"error": str(exc)})
    return {"received": True}
