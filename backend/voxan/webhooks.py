"""Typed views of the VAPI server-webhook payloads.

Message types and function names are closed unions; anything the voice
platform sends outside them parses into an explicit ``Unknown*`` variant so
the dispatcher can answer it deliberately.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag

from .services.correlator import CallEvent


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class Customer(_Payload):
    number: Optional[str] = None
    name: Optional[str] = None


class CallAnalysis(_Payload):
    success_evaluation: Any = Field(default=None, alias="successEvaluation")
    summary: Optional[str] = None


class CallInfo(_Payload):
    id: str
    assistant_id: Optional[str] = Field(default=None, alias="assistantId")
    customer: Optional[Customer] = None
    status: Optional[str] = None
    duration: Optional[float] = None
    cost: Any = None
    analysis: Optional[CallAnalysis] = None
    recording_url: Optional[str] = Field(default=None, alias="recordingUrl")

    def to_event(self) -> CallEvent:
        analysis = self.analysis or CallAnalysis()
        success = analysis.success_evaluation
        customer = self.customer or Customer()
        return CallEvent(
            vapi_call_id=self.id,
            assistant_id=self.assistant_id,
            phone_number=customer.number,
            customer_name=customer.name,
            status=self.status,
            duration=self.duration,
            cost=self.cost,
            success=success is True or str(success).lower() == "true",
            outcome=analysis.summary,
            recording_url=self.recording_url,
        )


# Function-call parameters -------------------------------------------------


class CheckAvailabilityParams(_Payload):
    days_ahead: Optional[int] = Field(default=None, alias="daysAhead")
    duration_minutes: Optional[int] = Field(default=None, alias="durationMinutes")
    timezone: Optional[str] = None


class BookAppointmentParams(_Payload):
    name: str = ""
    practice: Optional[str] = None
    phone: str = ""
    email: str = ""
    datetime: str
    notes: str = ""


class RescheduleAppointmentParams(_Payload):
    appointment_id: str = Field(alias="appointmentId")
    datetime: str


class CancelAppointmentParams(_Payload):
    appointment_id: str = Field(alias="appointmentId")


class PracticeInfoParams(_Payload):
    phone: str


class CallbackTimeParams(_Payload):
    datetime: str


class CheckAvailabilityCall(_Payload):
    name: Literal["checkAvailability"]
    parameters: CheckAvailabilityParams = CheckAvailabilityParams()


class BookAppointmentCall(_Payload):
    name: Literal["bookAppointment"]
    parameters: BookAppointmentParams


class RescheduleAppointmentCall(_Payload):
    name: Literal["rescheduleAppointment"]
    parameters: RescheduleAppointmentParams


class CancelAppointmentCall(_Payload):
    name: Literal["cancelAppointment"]
    parameters: CancelAppointmentParams


class GetPracticeInfoCall(_Payload):
    name: Literal["getPracticeInfo"]
    parameters: PracticeInfoParams


class SaveCallbackTimeCall(_Payload):
    name: Literal["saveCallbackTime"]
    parameters: CallbackTimeParams


class UnknownFunctionCall(_Payload):
    name: str
    parameters: dict = {}


KNOWN_FUNCTIONS = {
    "checkAvailability": CheckAvailabilityCall,
    "bookAppointment": BookAppointmentCall,
    "rescheduleAppointment": RescheduleAppointmentCall,
    "cancelAppointment": CancelAppointmentCall,
    "getPracticeInfo": GetPracticeInfoCall,
    "saveCallbackTime": SaveCallbackTimeCall,
}


def _function_tag(value: Any) -> str:
    name = value.get("name") if isinstance(value, dict) else getattr(value, "name", None)
    return name if name in KNOWN_FUNCTIONS else "unknown"


FunctionCall = Annotated[
    Union[
        Annotated[CheckAvailabilityCall, Tag("checkAvailability")],
        Annotated[BookAppointmentCall, Tag("bookAppointment")],
        Annotated[RescheduleAppointmentCall, Tag("rescheduleAppointment")],
        Annotated[CancelAppointmentCall, Tag("cancelAppointment")],
        Annotated[GetPracticeInfoCall, Tag("getPracticeInfo")],
        Annotated[SaveCallbackTimeCall, Tag("saveCallbackTime")],
        Annotated[UnknownFunctionCall, Tag("unknown")],
    ],
    Discriminator(_function_tag),
]


# Messages ------------------------------------------------------------------


class CallStartedMessage(_Payload):
    type: Literal["call-started"]


class CallEndedMessage(_Payload):
    type: Literal["call-ended"]


class TranscriptMessage(_Payload):
    type: Literal["transcript"]
    transcript: Optional[str] = None


class FunctionCallMessage(_Payload):
    type: Literal["function-call"]
    function_call: FunctionCall = Field(alias="functionCall")


class UnknownMessage(_Payload):
    type: Optional[str] = None


KNOWN_MESSAGES = {
    "call-started": CallStartedMessage,
    "call-ended": CallEndedMessage,
    "transcript": TranscriptMessage,
    "function-call": FunctionCallMessage,
}


def _message_tag(value: Any) -> str:
    kind = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    return kind if kind in KNOWN_MESSAGES else "unknown"


Message = Annotated[
    Union[
        Annotated[CallStartedMessage, Tag("call-started")],
        Annotated[CallEndedMessage, Tag("call-ended")],
        Annotated[TranscriptMessage, Tag("transcript")],
        Annotated[FunctionCallMessage, Tag("function-call")],
        Annotated[UnknownMessage, Tag("unknown")],
    ],
    Discriminator(_message_tag),
]


class VapiWebhook(_Payload):
    message: Message
    call: Optional[CallInfo] = None
