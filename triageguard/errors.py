"""TriageGuard exception hierarchy.

Callers map these onto their own transport (HTTP status, queue DLQ, ...):
missing field / invalid input are the caller's fault, not-found and
precondition failures describe the episode's state, dependency failures
mean a store or the message bus did not answer.
"""

from __future__ import annotations


class WorkflowError(Exception):
    """Base exception for all TriageGuard errors."""


class InvalidInputError(WorkflowError):
    """Request data failed validation."""


class MissingFieldError(InvalidInputError):
    """A required identifier was not supplied."""

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"{field} is required")


class NotFoundError(WorkflowError):
    """Episode or record does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} '{identifier}' not found")


class PreconditionFailedError(WorkflowError):
    """The episode is not in a state that permits the operation."""


class InvalidTransitionError(PreconditionFailedError):
    """A status transition is not permitted by the lifecycle."""


class ConcurrencyConflictError(PreconditionFailedError):
    """The record changed since it was read (stale version)."""

    def __init__(self, identifier: str, expected: int, actual: int | None = None) -> None:
        self.identifier = identifier
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Version conflict on '{identifier}': expected {expected}, found {actual}"
        )


class DependencyFailureError(WorkflowError):
    """The store or message bus failed."""
