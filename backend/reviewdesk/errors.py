"""
Error taxonomy for review workflow mutations.

Every failure a caller can see is a ReviewDeskError subclass carrying the
HTTP status it maps to. main.py renders them as {"detail": message}.
"""
from __future__ import annotations

from typing import Any


class ReviewDeskError(Exception):
    """Base class for all workflow errors surfaced to callers."""

    status_code: int = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, Any]:
        return {"detail": self.message}


class ValidationError(ReviewDeskError):
    """Missing fields, size/type/count limits, malformed request payloads."""

    status_code = 400


class NotFoundError(ReviewDeskError):
    status_code = 404


class AuthorizationError(ReviewDeskError):
    """Actor is not allowed to perform the mutation."""

    status_code = 403


class NotAuthenticatedError(AuthorizationError):
    status_code = 401


class StateConflictError(ReviewDeskError):
    """The track's client decision is no longer pending."""

    status_code = 409

    def __init__(self, decision: str, message: str | None = None):
        super().__init__(message or f"Decision ({decision}) already submitted.")
        self.decision = decision

    def to_payload(self) -> dict[str, Any]:
        return {"detail": self.message, "decision": self.decision}


class VersionConflictError(ReviewDeskError):
    """The track changed since the caller read it."""

    status_code = 409

    def __init__(self, expected: int | None, actual: int | None):
        super().__init__(
            f"Track was modified concurrently (expected version {expected}, found {actual}). Reload and retry."
        )
        self.expected = expected
        self.actual = actual

    def to_payload(self) -> dict[str, Any]:
        return {"detail": self.message, "version": self.actual}


class UpstreamServiceError(ReviewDeskError):
    """Image host unreachable or rejecting the upload."""

    status_code = 502


class PersistenceError(ReviewDeskError):
    """Store write failure or malformed persisted data."""

    status_code = 500


class PasswordRequiredError(AuthorizationError):
    """The project is password protected and no valid proof was presented."""

    def __init__(self, project_id: str):
        super().__init__("This project is password protected.")
        self.project_id = project_id

    def to_payload(self) -> dict[str, Any]:
        return {"detail": self.message, "password_required": True, "project_id": self.project_id}
