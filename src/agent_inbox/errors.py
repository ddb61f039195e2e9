"""Error taxonomy shared by the messaging core and the tool surface."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


class MessagingError(Exception):
    """Base class for domain errors that map directly onto a tool error type."""

    error_type = "MESSAGING_ERROR"
    recoverable = True

    def __init__(self, message: str, *, data: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.data: dict[str, Any] = data or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.error_type,
            "message": str(self),
            "recoverable": self.recoverable,
            "data": self.data,
        }


class ValidationError(MessagingError):
    """A required field is missing or a value is outside its allowed set."""

    error_type = "INVALID_ARGUMENT"


class NotFoundError(MessagingError):
    """A ticket, agent, message or notification could not be resolved."""

    error_type = "NOT_FOUND"


@dataclass(slots=True, frozen=True)
class PartialFanoutFailure:
    """Record of a single notification intent that failed after the message was stored.

    Never raised. Collected on ``FanoutReport.failures`` and logged.
    """

    recipient: str
    kind: str
    reason: str
    exception_type: str

    @classmethod
    def from_exception(cls, recipient: str, kind: str, exc: BaseException) -> "PartialFanoutFailure":
        return cls(recipient=recipient, kind=kind, reason=str(exc), exception_type=type(exc).__name__)

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipient": self.recipient,
            "kind": self.kind,
            "reason": self.reason,
            "exception_type": self.exception_type,
        }


def require_text(value: Optional[str], field_name: str) -> str:
    """Return ``value`` stripped of surrounding whitespace or raise ValidationError if blank."""
    if value is None or not str(value).strip():
        raise ValidationError(f"{field_name} is required", data={"field": field_name})
    return str(value).strip()
