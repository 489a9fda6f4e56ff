"""Error taxonomy for the round coordinator.

Exceptions are raised inside the core and converted to ``ErrorDetail`` values
by the coordinator entry points, so callers always receive an explicit outcome.
"""
from __future__ import annotations

from dataclasses import dataclass


class CoreError(Exception):
    """Base class for every contest-state error raised by the core."""

    kind = "error"
    retryable = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    def detail(self) -> "ErrorDetail":
        return ErrorDetail(kind=self.kind, message=self.message, retryable=self.retryable)


class ValidationError(CoreError):
    """Malformed input, rejected before any state change."""

    kind = "validation"


class RecordError(ValidationError):
    """A stored document does not match its record schema."""

    kind = "invalid_record"


class ConflictError(CoreError):
    kind = "conflict"


class InvalidTransition(ConflictError):
    kind = "invalid_transition"


class DuplicateSubmission(ConflictError):
    """A Result already exists for (participant, room, round); ``existing`` is it."""

    kind = "duplicate_submission"

    def __init__(self, message: str = "", *, existing=None) -> None:
        super().__init__(message)
        self.existing = existing


class NotFoundError(CoreError):
    kind = "not_found"


class NoResultsError(CoreError):
    """No Results exist yet for the round; the caller may try again later."""

    kind = "no_results"
    retryable = True


class TransientStoreError(CoreError):
    """Store timeout or unavailability. Nothing was applied."""

    kind = "transient"
    retryable = True


class PreconditionFailed(ConflictError):
    """A conditional store write found the document in an unexpected state."""

    kind = "precondition_failed"

    def __init__(self, message: str = "", *, collection: str | None = None, key: str | None = None) -> None:
        super().__init__(message)
        self.collection = collection
        self.key = key


@dataclass(frozen=True)
class ErrorDetail:
    """Represents a failure returned to the caller as a value."""

    kind: str
    message: str | None = None
    retryable: bool = False
