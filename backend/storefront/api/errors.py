"""
Application exceptions.

AppError is the only exception type the HTTP layer renders (see main.py);
everything in the engine's error taxonomy subclasses it with a default
business code and HTTP status, so services raise meaningful types and the
API still answers with the unified {code, message, data} envelope.

Usage:
    raise LicenseRevoked()
    raise ValidationError("pwywAmountCents is below the minimum price")
"""
from __future__ import annotations


class AppError(Exception):
    """
    Base application error.

    Attributes:
    - code: business error code (clients switch on it)
    - message: human readable message
    - status_code: HTTP status
    """

    default_code: int = 500000
    default_message: str = "Internal error"
    default_status: int = 500

    def __init__(
        self,
        message: str | None = None,
        *,
        code: int | None = None,
        status_code: int | None = None,
    ) -> None:
        self.code = code if code is not None else self.default_code
        self.message = message if message is not None else self.default_message
        self.status_code = status_code if status_code is not None else self.default_status
        super().__init__(self.message)


class ValidationError(AppError):
    """Malformed or missing input; rejected before any mutation."""
    default_code = 400001
    default_message = "Invalid request"
    default_status = 400


class SignatureInvalid(ValidationError):
    """Inbound event failed authenticity verification."""
    default_code = 400101
    default_message = "Invalid signature"


class NotFound(AppError):
    default_code = 404001
    default_message = "Not found"
    default_status = 404


class IdempotencyNoOp(AppError):
    """
    Duplicate request recognized and safely ignored.

    Not a failure: raised inside the engine to short-circuit and caught by
    the caller that owns the unit of work.
    """
    default_code = 0
    default_message = "Already processed"
    default_status = 200


class TransientDependencyError(AppError):
    """Network or store hiccup; retry with backoff."""
    default_code = 503001
    default_message = "Temporarily unavailable"
    default_status = 503


class OrderNotFoundYet(TransientDependencyError):
    """A refund or dispute arrived before the payment it refers to."""
    default_code = 503101
    default_message = "Order not found yet"


class TerminalRejection(AppError):
    """An external system permanently refused the request."""
    default_code = 422001
    default_message = "Rejected"
    default_status = 422


class StateConflict(AppError):
    """
    Target state already reached (e.g. revoking a revoked license).

    Engine callers treat it as success to keep reconciliation idempotent.
    """
    default_code = 409001
    default_message = "State conflict"
    default_status = 409


class CheckoutInProgress(StateConflict):
    default_code = 409101
    default_message = "Checkout session is being created, retry shortly"


class RaceLossError(AppError):
    """A concurrent request won the last slot."""
    default_code = 409201
    default_message = "Concurrent limit reached"
    default_status = 409


class RedemptionLimitExceeded(RaceLossError):
    default_code = 409202
    default_message = "Discount code has reached its redemption limit"


class LicenseRevoked(AppError):
    default_code = 403101
    default_message = "License has been revoked"
    default_status = 403


class ActivationLimitExceeded(AppError):
    default_code = 403102
    default_message = "License activation limit reached"
    default_status = 403


class DeviceNotActivated(AppError):
    default_code = 403103
    default_message = "Device is not activated for this license"
    default_status = 403


class RateLimited(AppError):
    default_code = 429001
    default_message = "Too many requests"
    default_status = 429
