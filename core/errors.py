from __future__ import annotations

from typing import Any, Optional


class DomainError(Exception):
    """Base exception for business rule violations.

    Carries an HTTP status and a stable machine-readable code so the API layer can
    render it without knowing every subclass.
    """

    status_code = 400
    code = "domain_error"

    def __init__(self, message: str = "", *, code: Optional[str] = None, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code
        self.details = details or {}


class ValidationFailed(DomainError):
    """Input data is invalid or violates domain rules."""

    status_code = 400
    code = "validation_failed"


class Unauthorized(DomainError):
    """Missing or invalid credentials."""

    status_code = 401
    code = "unauthorized"


class PermissionDenied(DomainError):
    """Authenticated, but the role or membership does not allow the action."""

    status_code = 403
    code = "forbidden"


class NotFound(DomainError):
    status_code = 404
    code = "not_found"


class Conflict(DomainError):
    status_code = 409
    code = "conflict"


class InvalidTransition(Conflict):
    """Subscription status change that the state machine does not allow."""

    code = "invalid_transition"


class LimitExceeded(DomainError):
    """Plan limit reached or feature not included in the current plan."""

    status_code = 402
    code = "limit_exceeded"


class RateLimited(DomainError):
    status_code = 429
    code = "too_many_attempts"


class PaymentProcessorError(DomainError):
    """The payment processor rejected a call or could not be reached."""

    status_code = 502
    code = "payment_processor_error"
