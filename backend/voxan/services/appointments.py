from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from ..config import BookingSettings
from ..errors import (
    BookingError,
    InvalidTransition,
    NotFound,
    PartialBookingFailure,
    PersistenceError,
    SlotUnavailable,
    ValidationError,
)
from ..models import (
    APPOINTMENT_CANCELLED,
    APPOINTMENT_COMPLETED,
    APPOINTMENT_CONFIRMED,
    TERMINAL_APPOINTMENT_STATUSES,
    Appointment,
    Interval,
    SlotCandidate,
    ensure_aware,
)
from ..validators import validate_email, validate_phone
from .availability import AvailabilityService
from .calendar import EventSpec, ExternalEventStore, event_bounds
from .correlator import CallLeadCorrelator

logger = logging.getLogger(__name__)


@dataclass
class Contact:
    name: str
    phone: str
    email: str


@dataclass
class PracticeInfo:
    name: str | None = None
    notes: str = ""


def _event_description(contact: Contact, practice: PracticeInfo, notes: str) -> str:
    return (
        f"Demo call with {contact.name} from {practice.name or 'their practice'}\n\n"
        f"Phone: {contact.phone}\n"
        f"Email: {contact.email}\n"
        f"Notes: {notes}\n\n"
        "Booking via VoxAn AI"
    )


class AppointmentLifecycle:
    """Books, reschedules, cancels and completes appointments.

    Every operation touches the external calendar first and the appointment
    row second. Nothing here retries; named failures go back to the caller.
    """

    def __init__(
        self,
        *,
        events: ExternalEventStore,
        availability: AvailabilityService,
        appointments_repo,
        correlator: CallLeadCorrelator,
        settings: BookingSettings,
        timezone: str,
    ) -> None:
        self._events = events
        self._availability = availability
        self._appointments = appointments_repo
        self._correlator = correlator
        self._settings = settings
        self._timezone = timezone

    def resolve(self, reference: str) -> Appointment:
        """Look an appointment up by id, then by calendar event id."""
        appt = self._appointments.get(reference)
        if appt is None:
            appt = self._appointments.find_by_calendar_event(reference)
        if appt is None:
            raise NotFound("I couldn't find that appointment.")
        return appt

    async def book(
        self,
        slot: SlotCandidate,
        contact: Contact,
        practice: PracticeInfo,
        *,
        vapi_call_id: str | None = None,
        notes: str = "",
    ) -> Appointment:
        notes = notes or practice.notes
        # Validate before any external or persisted write.
        phone = validate_phone(contact.phone, self._settings.phone_pattern)
        email = validate_email(contact.email, self._settings.email_pattern)
        if not (contact.name or "").strip():
            raise ValidationError("Please tell me the name for the booking")

        start = ensure_aware(slot.start)
        if not await self._availability.is_free(
            start, slot.duration_minutes, timezone=slot.timezone
        ):
            raise SlotUnavailable(
                "Sorry, that time has just been taken. Shall I find another slot?"
            )

        created = await self._events.create(
            EventSpec(
                summary=f"VoxAn Demo: {practice.name or contact.name}",
                description=_event_description(contact, practice, notes),
                start=start,
                end=slot.end,
                timezone=slot.timezone,
                attendees=list(self._settings.attendees),
            )
        )

        try:
            call = self._correlator.find_call(vapi_call_id)
            appt = self._appointments.create(
                call_id=call.id if call else None,
                customer_name=contact.name,
                phone=phone,
                email=email,
                practice_name=practice.name,
                appointment_time=start,
                calendar_event_id=created.event_id,
                calendar_link=created.link,
                status=APPOINTMENT_CONFIRMED,
                notes=notes or None,
            )
        except PersistenceError as exc:
            compensated = False
            if self._settings.compensate_partial_failures:
                compensated = await self._delete_event_quietly(created.event_id)
            logger.error(
                "booking_partial_failure",
                extra={
                    "calendar_event_id": created.event_id,
                    "vapi_call_id": vapi_call_id,
                    "compensated": compensated,
                },
            )
            if compensated:
                message = "I couldn't complete the booking. Please try again in a moment."
            else:
                message = (
                    "The meeting is in our calendar but I couldn't finish saving "
                    "the booking. Our team will confirm it with you shortly."
                )
            raise PartialBookingFailure(
                message,
                external_event_id=created.event_id,
                calendar_link=created.link,
                compensated=compensated,
            ) from exc

        try:
            self._correlator.upsert_lead(
                phone=phone,
                email=email,
                name=contact.name,
                practice_name=practice.name,
                source=self._settings.lead_source,
            )
        except PersistenceError:
            # The booking itself is consistent; the lead catches up on next contact.
            logger.warning(
                "booking_lead_upsert_failed",
                exc_info=True,
                extra={"appointment_id": appt.id},
            )

        logger.info(
            "appointment_booked",
            extra={
                "appointment_id": appt.id,
                "calendar_event_id": appt.calendar_event_id,
                "vapi_call_id": vapi_call_id,
            },
        )
        return appt

    async def compensate(self, failure: PartialBookingFailure) -> bool:
        """Remove the orphaned calendar event left by a partial booking."""
        if failure.compensated:
            return True
        try:
            await self._events.delete(failure.external_event_id)
        except NotFound:
            pass
        failure.compensated = True
        logger.info(
            "booking_compensated",
            extra={"calendar_event_id": failure.external_event_id},
        )
        return True

    async def _delete_event_quietly(self, event_id: str) -> bool:
        try:
            await self._events.delete(event_id)
        except NotFound:
            return True
        except BookingError:
            logger.warning(
                "booking_compensation_failed",
                exc_info=True,
                extra={"calendar_event_id": event_id},
            )
            return False
        return True

    async def reschedule(
        self,
        appointment_id: str,
        new_start: datetime,
        duration_minutes: int | None = None,
    ) -> Appointment:
        """Move an appointment to `new_start`.

        The appointment keeps the length of its calendar event unless
        `duration_minutes` is given.
        """
        appt = self.resolve(appointment_id)
        if appt.status in TERMINAL_APPOINTMENT_STATUSES:
            raise InvalidTransition(
                f"That appointment is {appt.status} and can't be moved."
            )

        event = await self._events.get(appt.calendar_event_id)
        if event is None:
            raise NotFound("That appointment is no longer on the calendar.")

        previous = ensure_aware(appt.appointment_time)
        own = event_bounds(event) or Interval(
            start=previous,
            end=previous + timedelta(minutes=self._settings.duration_minutes),
        )
        duration = (
            timedelta(minutes=duration_minutes)
            if duration_minutes
            else own.end - own.start
        )
        new_start = ensure_aware(new_start)
        if new_start == previous and new_start + duration == own.end:
            return appt

        if not await self._availability.is_free(
            new_start,
            int(duration.total_seconds() // 60),
            timezone=self._timezone,
            ignore=own,
        ):
            raise SlotUnavailable(
                "Sorry, that time isn't free. Shall I find another slot?"
            )

        await self._events.update(
            appt.calendar_event_id, new_start, new_start + duration
        )
        try:
            updated = self._appointments.update(
                appt.id, appointment_time=new_start, status=APPOINTMENT_CONFIRMED
            )
        except PersistenceError:
            # Put the calendar back so both sides still agree.
            await self._revert_event(appt, own)
            raise
        if updated is None:
            await self._revert_event(appt, own)
            raise NotFound("I couldn't find that appointment.")

        logger.info(
            "appointment_rescheduled",
            extra={
                "appointment_id": appt.id,
                "previous_time": previous.isoformat(),
                "new_time": new_start.isoformat(),
                "duration_minutes": int(duration.total_seconds() // 60),
            },
        )
        return updated

    async def _revert_event(self, appt: Appointment, original: Interval) -> None:
        try:
            await self._events.update(appt.calendar_event_id, original.start, original.end)
        except BookingError:
            logger.error(
                "reschedule_revert_failed",
                exc_info=True,
                extra={
                    "appointment_id": appt.id,
                    "calendar_event_id": appt.calendar_event_id,
                },
            )

    async def cancel(self, appointment_id: str) -> None:
        """Cancel an appointment; cancelling twice is a no-op."""
        appt = self.resolve(appointment_id)
        if appt.status == APPOINTMENT_CANCELLED:
            logger.info("appointment_already_cancelled", extra={"appointment_id": appt.id})
            return
        if appt.status == APPOINTMENT_COMPLETED:
            raise InvalidTransition("That appointment has already taken place.")

        try:
            await self._events.delete(appt.calendar_event_id)
        except NotFound:
            # A retry after a failed row update lands here.
            logger.info(
                "calendar_event_already_deleted",
                extra={"calendar_event_id": appt.calendar_event_id},
            )

        if self._appointments.update(appt.id, status=APPOINTMENT_CANCELLED) is None:
            raise NotFound("I couldn't find that appointment.")
        logger.info("appointment_cancelled", extra={"appointment_id": appt.id})

    async def complete(self, appointment_id: str) -> Appointment:
        appt = self.resolve(appointment_id)
        if appt.status == APPOINTMENT_COMPLETED:
            return appt
        if appt.status == APPOINTMENT_CANCELLED:
            raise InvalidTransition("That appointment was cancelled.")
        updated = self._appointments.update(appt.id, status=APPOINTMENT_COMPLETED)
        if updated is None:
            raise NotFound("I couldn't find that appointment.")
        return updated
