"""Typed outcomes for expected business-rule failures.

Every ``DispatchError`` is a recoverable, user-facing result: the API layer
turns it into a ``{"error", "code"}`` response. ``InvariantViolation`` is not
one of them; it signals a bug and surfaces as a server error.
"""

from __future__ import annotations


class DispatchError(Exception):
    code = "error"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class ValidationError(DispatchError):
    """Malformed input to a session step or command. Re-prompt."""

    code = "validation_error"
    status_code = 400


class NotFoundError(DispatchError):
    code = "not_found"
    status_code = 404


class UnauthorizedError(DispatchError):
    """Caller is not the task's customer or assigned worker."""

    code = "unauthorized"
    status_code = 403


class PreconditionError(DispatchError):
    """A state-machine rule was violated."""

    code = "precondition_failed"
    status_code = 409


class ConflictError(DispatchError):
    """Lost a race on a contended transition, e.g. offer acceptance."""

    code = "conflict"
    status_code = 409


class ExternalServiceError(DispatchError):
    """A provider kept failing after the retry budget was spent."""

    code = "external_service_error"
    status_code = 503


class InvariantViolation(RuntimeError):
    """Internal state is inconsistent. Never a user error."""


# Raised by adapters; retry.call_external decides what to do with them.


class TransientServiceError(Exception):
    """Rate limited, unavailable or timed out. Safe to retry."""


class PermanentServiceError(Exception):
    """Rejected request. Retrying will not help."""
