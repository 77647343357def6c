"""
Booking error taxonomy.

Every failure the booking flow can report to a caller is one of these
exceptions. Each carries a stable ``code`` (what clients switch on) and the
HTTP status the API answers with, so routes stay thin and the handler in
``register_exception_handlers`` renders them uniformly.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class BookingError(Exception):
    """Base class for all booking flow failures"""

    code = "booking_error"
    status_code = 400
    default_message = "Booking request failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Validation: rejected immediately, never retried
# ---------------------------------------------------------------------------


class BookingValidationError(BookingError):
    status_code = 422


class OutOfHours(BookingValidationError):
    code = "out_of_hours"
    default_message = "That time is outside the field's operating hours"


class InThePast(BookingValidationError):
    code = "in_the_past"
    default_message = "That time has already passed"


class UnknownField(BookingValidationError):
    code = "unknown_field"
    status_code = 404
    default_message = "Field not found for this complex"


class InvalidSlotKey(BookingValidationError):
    code = "invalid_slot_key"
    status_code = 400
    default_message = "Malformed slot key"


class InvalidDeposit(BookingValidationError):
    code = "invalid_deposit"
    default_message = "Deposit amount must be greater than 0"


class MalformedNotification(BookingValidationError):
    code = "malformed_notification"
    status_code = 400
    default_message = "Notification has no payment identifier"


# ---------------------------------------------------------------------------
# Contention: expected under load, shown to users as "already booked"
# ---------------------------------------------------------------------------


class ContentionError(BookingError):
    status_code = 409


class SlotTaken(ContentionError):
    code = "slot_taken"
    default_message = "Someone else just took this slot"

    def __init__(self, message: Optional[str] = None, status: Optional[str] = None):
        super().__init__(message)
        # Status of the reservation occupying the slot (hold, pending, approved, ...)
        self.status = status

    @property
    def is_temporary(self) -> bool:
        """A competing hold may still expire; anything else is final"""
        return self.status == "hold"


class StaleHold(ContentionError):
    code = "stale_hold"
    default_message = "The hold on this slot expired before payment started"


# ---------------------------------------------------------------------------
# Transient external failures
# ---------------------------------------------------------------------------


class ProcessorError(BookingError):
    status_code = 503


class ProcessorUnavailable(ProcessorError):
    code = "processor_unavailable"
    default_message = "Payment processor unavailable, please try again later"


class CredentialRejected(ProcessorError):
    code = "credential_rejected"
    default_message = "Payment processor rejected the credential"


def error_body(exc: BookingError) -> dict:
    body = {"error": exc.code, "detail": exc.message}
    if isinstance(exc, SlotTaken) and exc.status:
        body["status"] = exc.status
        body["temporary"] = exc.is_temporary
    return body


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(BookingError)
    async def booking_error_handler(request: Request, exc: BookingError):
        if isinstance(exc, ProcessorError):
            logger.warning(f"⚠️ {request.method} {request.url.path} - {exc.code}: {exc.message}")
        else:
            logger.info(f"ℹ️ {request.method} {request.url.path} - {exc.code}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=error_body(exc))
