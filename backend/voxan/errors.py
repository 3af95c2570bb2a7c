from __future__ import annotations


class BookingError(Exception):
    """Base class for named failures surfaced by the booking core.

    `message` is phrased so a voice agent can relay it to the caller.
    """

    code = "booking_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(BookingError):
    code = "validation_error"


class SlotUnavailable(BookingError):
    code = "slot_unavailable"


class InvalidTransition(BookingError):
    code = "invalid_transition"


class UpstreamUnavailable(BookingError):
    code = "upstream_unavailable"


class PersistenceError(BookingError):
    code = "persistence_error"


class NotFound(BookingError):
    code = "not_found"


class PartialBookingFailure(BookingError):
    """The calendar event exists but the appointment row could not be saved."""

    code = "partial_booking_failure"

    def __init__(
        self,
        message: str,
        *,
        external_event_id: str,
        calendar_link: str | None = None,
        compensated: bool = False,
    ) -> None:
        super().__init__(message)
        self.external_event_id = external_event_id
        self.calendar_link = calendar_link
        self.compensated = compensated
