"""Exceptions raised by the booking engine and mapped to HTTP responses by the web layer."""

from __future__ import annotations


class BookingError(Exception):
    """Base class for all booking engine errors."""


class BookingValidationError(BookingError):
    """Request fields are malformed or missing. Never persisted."""

    def __init__(self, message: str = "Validation failed", details: dict[str, list[str]] | None = None):
        super().__init__(message)
        self.details = details or {}


class CaptchaFailed(BookingError):
    """The CAPTCHA token was rejected."""


class RateLimitExceeded(BookingError):
    """Too many requests for this key. No state was created."""

    def __init__(self, message: str = "Too many requests", retry_after: str = ""):
        super().__init__(message)
        self.retry_after = retry_after


class TokenNotFoundOrConsumed(BookingError):
    """No reservation matches the token in the expected status.

    Covers unknown tokens and tokens already used, so callers cannot tell
    the two apart.
    """


class TokenExpired(BookingError):
    """The verification window has elapsed. The reservation is left untouched."""


class SlotUnavailable(BookingError):
    """The requested slot overlaps a live reservation."""


class HorizonExceeded(BookingError):
    """The requested date range is further ahead than bookings are allowed."""


class PersistenceError(BookingError):
    """The store failed to write the primary state transition."""


class UpstreamError(BookingError):
    """A calendar or e-mail call failed. Logged, never surfaced to the guest."""
