# calsync/errors.py
"""
Error taxonomy for the calendar sync engine.

Every error carries an HTTP `status_code` and a `user_message` that is safe
to show to a coach or mentee. The exception's own message (`str(exc)`) may
hold provider detail and is only logged.
"""
from typing import Optional


class CalSyncError(Exception):
    status_code: int = 500
    user_message: str = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None, *, user_message: Optional[str] = None):
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class NotConnected(CalSyncError):
    status_code = 404
    user_message = "This coach has not connected a calendar."


class TokenRefreshFailed(CalSyncError):
    status_code = 502
    user_message = "The calendar connection has expired. Please reconnect your calendar."


class ProviderError(CalSyncError):
    """Non-2xx (or no) response from the scheduling provider."""

    status_code = 502

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        provider_message: Optional[str] = None,
        user_message: Optional[str] = None,
    ):
        super().__init__(message, user_message=user_message)
        self.provider_status = status_code
        self.provider_message = provider_message


class ProviderUnavailable(ProviderError):
    """Network failure, timeout or 5xx. Retryable by the caller."""

    status_code = 503
    user_message = "The calendar service is temporarily unavailable. Please try again."


class ProviderRejected(ProviderError):
    """4xx business error. Not retried; the provider message is surfaced."""

    status_code = 400

    def __init__(self, message: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        if self.provider_message and "user_message" not in kwargs:
            self.user_message = self.provider_message


class TokenInvalid(ProviderRejected):
    """401/498 from the provider: the bearer token is expired or revoked."""

    status_code = 502
    user_message = "The calendar connection has expired. Please reconnect your calendar."

    def __init__(self, message: Optional[str] = None, **kwargs):
        kwargs.setdefault("user_message", TokenInvalid.user_message)
        super().__init__(message, **kwargs)


class SlotNoLongerAvailable(CalSyncError):
    status_code = 409
    user_message = "That time slot is no longer available. Please pick another time."


class BookingConflict(CalSyncError):
    status_code = 409
    user_message = "You already have a session booked at that time."


class CancellationWindowViolation(CalSyncError):
    status_code = 403
    user_message = "Sessions cannot be cancelled within 24 hours of the start time."


class SyncConflict(CalSyncError):
    status_code = 409
    user_message = (
        "This schedule was changed both here and in your calendar. "
        "Please review it before saving again."
    )


class InvalidDuration(CalSyncError):
    status_code = 400
    user_message = "The requested session length is not offered by this coach."


class BookingPolicyViolation(CalSyncError):
    status_code = 400
    user_message = "The booking does not match the coach's published rate."


class NotFound(CalSyncError):
    status_code = 404
    user_message = "Not found."


class NotSessionOwner(CalSyncError):
    status_code = 403
    user_message = "You can only cancel your own sessions."


class InvalidSessionState(CalSyncError):
    status_code = 400
    user_message = "Only scheduled sessions can be cancelled."


class IllegalStatusTransition(CalSyncError):
    status_code = 409
    user_message = "That change is not allowed for the session in its current state."


class ReconciliationRequired(CalSyncError):
    """A provider-side mutation could not be mirrored or undone internally."""

    status_code = 500
    user_message = "We could not finish your booking. Our team has been notified."


class InvalidWebhookSignature(CalSyncError):
    status_code = 401
    user_message = "Invalid signature"
