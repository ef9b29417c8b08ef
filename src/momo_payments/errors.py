"""Error taxonomy for the payment core.

Every error carries a stable ``code`` and the HTTP status the API layer
renders it with. ``retryable`` tells callers whether repeating the same
request can succeed (only gateway transport problems qualify).
"""

from __future__ import annotations

from typing import Any


class PaymentError(Exception):
    """Base class for all payment core errors."""

    code = "PAYMENT_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "detail": self.message,
            "code": self.code,
            "retryable": self.retryable,
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(PaymentError):
    """Malformed or inconsistent input."""

    code = "VALIDATION_ERROR"
    status_code = 400


class AuthenticationError(PaymentError):
    """Missing or invalid webhook signature / API key."""

    code = "AUTHENTICATION_ERROR"
    status_code = 401


class ForbiddenError(PaymentError):
    """Caller is authenticated but does not own the session."""

    code = "FORBIDDEN"
    status_code = 403


class NotFoundError(PaymentError):
    """Unknown session reference."""

    code = "NOT_FOUND"
    status_code = 404


class ConflictError(PaymentError):
    """Request contradicts the current state of a session.

    Distinct from a harmless duplicate, which is a no-op success.
    """

    code = "CONFLICT"
    status_code = 409

    def __init__(
        self,
        message: str,
        from_status: str | None = None,
        to_status: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message, details)


class TransientGatewayError(PaymentError):
    """Network failure or timeout talking to the external gateway."""

    code = "GATEWAY_UNAVAILABLE"
    status_code = 503
    retryable = True


class InternalError(PaymentError):
    """Unexpected failure."""

    code = "INTERNAL_ERROR"
    status_code = 500
