"""
Error taxonomy shared by every scheduling operation.

Each error carries a ``kind`` so a presentation layer can decide how to
render it (and whether retrying against fresh state makes sense) without
inspecting the message text.
"""

from typing import Any


class SchedulingError(Exception):
    kind = "error"
    http_status = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.kind,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(SchedulingError):
    """Malformed input; never sent to the store."""

    kind = "validation"
    http_status = 422


class NotFoundError(SchedulingError):
    kind = "not_found"
    http_status = 404


class ConflictError(SchedulingError):
    """Invariant violation, illegal transition, or concurrent mutation."""

    kind = "conflict"
    http_status = 409


class TransientError(SchedulingError):
    """Network failure or store timeout. Safe to retry: nothing was committed."""

    kind = "transient"
    http_status = 503
