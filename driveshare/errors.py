# Domain error taxonomy for the booking engine.
# Services raise these; the API layer maps them to HTTP responses through a single
# exception handler registered in main.py.
from __future__ import annotations

from typing import Any, Dict, Optional


class BookingError(Exception):
    """Base class for rejections surfaced verbatim to the caller."""

    code: str = "booking_error"
    status_code: int = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            detail.update(self.details)
        return detail


# Validation errors: never retried automatically
class InvalidDateRange(BookingError):
    code = "invalid_date_range"
    status_code = 400


class PastStartDate(BookingError):
    code = "past_start_date"
    status_code = 400


class InvalidBookingRequest(BookingError):
    code = "invalid_request"
    status_code = 400


# Lookups
class VehicleNotFound(BookingError):
    code = "vehicle_not_found"
    status_code = 404


class BookingNotFound(BookingError):
    code = "booking_not_found"
    status_code = 404


class VehicleNotApproved(BookingError):
    code = "vehicle_not_approved"
    status_code = 409


# Conflict errors: expected under concurrent demand
class DateRangeUnavailable(BookingError):
    code = "date_range_unavailable"
    status_code = 409


# State errors: illegal transition requests
class TransitionRejected(BookingError):
    code = "transition_rejected"
    status_code = 409

    def __init__(
        self,
        message: str,
        *,
        current_status: Optional[str] = None,
        requested: Optional[str] = None,
    ) -> None:
        super().__init__(message, current_status=current_status, requested=requested)
        self.current_status = current_status
        self.requested = requested


class NotAllowed(BookingError):
    code = "not_allowed"
    status_code = 403


# Infrastructure errors: retried by the caller layer with backoff before surfacing
class LockTimeout(BookingError):
    code = "lock_timeout"
    status_code = 503


class ReservationTimeout(LockTimeout):
    code = "reservation_timeout"


class TransitionTimeout(LockTimeout):
    code = "transition_timeout"
