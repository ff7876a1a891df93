"""Domain errors raised by the booking engine."""

from __future__ import annotations

from typing import Any, Sequence


class BookingEngineError(Exception):
    """Base class for every error the engine raises on purpose."""

    code = "engine_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.code, "detail": self.message}
        if self.details:
            payload["context"] = self.details
        return payload


class SlotConflict(BookingEngineError):
    """A requested slot is no longer available."""

    code = "slot_conflict"

    def __init__(self, message: str, slot_ids: Sequence[Any] = ()) -> None:
        super().__init__(message, slot_ids=[str(slot_id) for slot_id in slot_ids])
        self.slot_ids = list(slot_ids)


class InvalidTransition(BookingEngineError):
    """The requested state change is not reachable from the current state."""

    code = "invalid_transition"


class PreconditionFailed(BookingEngineError):
    code = "precondition_failed"


class ValidationFailed(BookingEngineError):
    code = "validation_failed"


class NotFound(BookingEngineError):
    code = "not_found"


class Forbidden(BookingEngineError):
    code = "forbidden"


class UpstreamFailure(BookingEngineError):
    """A storage or dispatch collaborator failed."""

    code = "upstream_failure"


__all__ = [
    "BookingEngineError",
    "Forbidden",
    "InvalidTransition",
    "NotFound",
    "PreconditionFailed",
    "SlotConflict",
    "UpstreamFailure",
    "ValidationFailed",
]
