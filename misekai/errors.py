"""Error taxonomy for action operations.

Every error raised by :mod:`misekai.services` is a :class:`MisekaiError`.
The handler layer catches them and turns them into an ``ActionResult``.
"""
from __future__ import annotations


class MisekaiError(Exception):
    """Base class for errors surfaced to callers as a result message."""

    status_code = 400


class ValidationError(MisekaiError):
    """Payload failed schema validation; carries per-field messages."""

    status_code = 422

    def __init__(self, message: str = "Validation failed",
                 field_errors: dict[str, list[str]] | None = None):
        super().__init__(message)
        self.field_errors = field_errors or {}


class AuthenticationRequired(MisekaiError):
    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class NotFound(MisekaiError):
    status_code = 404

    def __init__(self, message: str = "Action not found"):
        super().__init__(message)


class BusinessRuleViolation(MisekaiError):
    """A well-formed request that the action lifecycle rules refuse."""

    status_code = 409


class StorageError(MisekaiError):
    """The backing store failed; the message carries the store's reason."""

    status_code = 500
