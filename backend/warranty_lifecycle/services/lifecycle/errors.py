"""
Lifecycle Errors

Exception hierarchy shared by the lifecycle services, the scheduler and the routers.
Every error carries a stable code, a user-visible message and the HTTP status the
API layer answers with.
"""
from enum import Enum
from typing import Optional


class LifecycleError(Exception):
    """Base class for all lifecycle engine errors."""

    code = "LIFECYCLE_ERROR"
    http_status = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self):
        return {"code": self.code, "message": self.message}


class ValidationError(LifecycleError):
    """Guard failure: missing field, illegal transition, incomplete submission."""

    code = "VALIDATION_ERROR"
    http_status = 400


class IllegalTransitionError(ValidationError):
    """Requested transition is not in the state table."""

    code = "ILLEGAL_TRANSITION"
    http_status = 409


class RecordNotFoundError(LifecycleError):
    code = "NOT_FOUND"
    http_status = 404


class TokenFailure(str, Enum):
    """Classification of verification token failures."""
    TOKEN_INVALID = "TOKEN_INVALID"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_ALREADY_USED = "TOKEN_ALREADY_USED"
    WRONG_TYPE = "WRONG_TYPE"


TOKEN_FAILURE_MESSAGES = {
    TokenFailure.TOKEN_INVALID: "Invalid verification link",
    TokenFailure.TOKEN_EXPIRED: "Verification link has expired",
    TokenFailure.TOKEN_ALREADY_USED: "Verification link has already been used",
    TokenFailure.WRONG_TYPE: "Verification link is not valid for this action",
}


class TokenError(LifecycleError):
    """Token could not be used. `failure` says why."""

    http_status = 400

    def __init__(self, failure: TokenFailure, message: Optional[str] = None):
        super().__init__(message or TOKEN_FAILURE_MESSAGES[failure], code=failure.value)
        self.failure = failure
        if failure == TokenFailure.TOKEN_EXPIRED:
            self.http_status = 410


class NotificationError(LifecycleError):
    """Delivery failed. Logged by callers, never blocks a committed transition."""

    code = "NOTIFICATION_FAILED"
    http_status = 502


class ConcurrencyConflict(LifecycleError):
    """A concurrent writer changed the record first. Re-read and retry."""

    code = "CONCURRENCY_CONFLICT"
    http_status = 409


class DataIntegrityError(LifecycleError):
    """A write would violate a persisted invariant and was prevented."""

    code = "DATA_INTEGRITY"
    http_status = 500


class PermissionDeniedError(LifecycleError):
    code = "PERMISSION_DENIED"
    http_status = 403
