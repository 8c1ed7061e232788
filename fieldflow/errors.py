"""Error taxonomy shared by the engine, persistence and gateway layers."""

from __future__ import annotations


class FieldflowError(Exception):
    """Base class for all errors surfaced by fieldflow."""

    code: str = "internal"
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(FieldflowError):
    """Unknown task, execution, step or template. Never retried."""

    code = "not_found"
    status_code = 404


class InvalidTransitionError(FieldflowError):
    """The requested move violates the workflow state machine."""

    code = "invalid_transition"
    status_code = 400


class ForbiddenError(FieldflowError):
    """The caller lacks the role required for the operation."""

    code = "forbidden"
    status_code = 403


class ConflictError(FieldflowError):
    """Lost an optimistic-concurrency race; safe to retry once after re-reading."""

    code = "conflict"
    status_code = 409


class InternalError(FieldflowError):
    """Unexpected persistence or configuration failure."""

    code = "internal"
    status_code = 500


class TemplateError(InternalError):
    """A procedure template is malformed (duplicate or non-dense step order)."""


__all__ = [
    "FieldflowError",
    "NotFoundError",
    "InvalidTransitionError",
    "ForbiddenError",
    "ConflictError",
    "InternalError",
    "TemplateError",
]
