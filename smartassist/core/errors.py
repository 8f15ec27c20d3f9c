"""Error taxonomy for the session & synchronization engine.

Every error carries an HTTP status so the API layer can translate it
without a lookup table.
"""
from typing import Optional


class SmartAssistError(Exception):
    """Base class for engine errors."""

    status_code = 500
    retryable = False

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "detail": self.detail,
            "retryable": self.retryable,
        }


class ValidationError(SmartAssistError):
    """User-correctable input problem, rejected before any write."""

    status_code = 422


class PersistenceError(SmartAssistError):
    """The backing store call failed. Local state is left unchanged."""

    status_code = 503
    retryable = True


class NotFoundError(SmartAssistError):
    """An expected single row is absent."""

    status_code = 404


class AuthRequiredError(SmartAssistError):
    """No identity is present for an operation that needs one."""

    status_code = 401


class PermissionDeniedError(SmartAssistError):
    """The identity is present but has the wrong user type."""

    status_code = 403


class ConflictError(SmartAssistError):
    """A write collided with existing data or lost against a concurrent writer."""

    status_code = 409
