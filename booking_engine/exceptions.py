"""
Exceptions
==========

Domain errors raised by the booking services. Each carries an HTTP status and
a machine-checkable ``reason`` so the API layer can render them verbatim.
"""

from typing import Optional


class BookingEngineError(Exception):
    """Base exception for booking engine errors."""

    status_code: int = 500
    reason: str = "internal_error"

    def __init__(self, message: str, reason: Optional[str] = None, status_code: Optional[int] = None):
        self.message = message
        if reason is not None:
            self.reason = reason
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class ValidationFailed(BookingEngineError):
    """Raised for missing or malformed input (400)."""
    status_code = 400
    reason = "validation_error"


class Forbidden(BookingEngineError):
    """Raised when the requester does not own the booking (403)."""
    status_code = 403
    reason = "forbidden"


class NotFound(BookingEngineError):
    """Raised when a record does not exist (404)."""
    status_code = 404
    reason = "not_found"


class Conflict(BookingEngineError):
    """Raised on duplicates and lost races (409)."""
    status_code = 409
    reason = "conflict"


class StateConflict(BookingEngineError):
    """Raised when the booking is in the wrong state for the request (400)."""
    status_code = 400
    reason = "invalid_booking_state"


class UpstreamError(BookingEngineError):
    """Raised when the payment provider rejects or cannot be reached (502)."""
    status_code = 502
    reason = "provider_error"


class RateLimitExceeded(BookingEngineError):
    """Raised when a client exceeds its request budget (429)."""
    status_code = 429
    reason = "rate_limited"

    def __init__(self, retry_after: int, message: str = "Too many requests. Please try again later."):
        self.retry_after = retry_after
        super().__init__(message)
