from __future__ import annotations

from typing import Any, Dict, Optional


class ScheduleError(Exception):
    """Base for every error raised by the schedule pipeline."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message, **self.detail}


class ValidationError(ScheduleError):
    """Malformed request or payload."""


class NotFoundError(ScheduleError):
    """Referenced record does not exist."""


class ConflictError(ScheduleError):
    """Task is already locked or claimed by another analysis."""


class NotEligibleError(ConflictError):
    """Task exists and is unlocked, but its status does not allow a claim."""


class ParseError(ScheduleError):
    """Content or a single field could not be decoded."""


class ExternalServiceError(ScheduleError):
    """LLM provider failed, timed out, or replied with an unusable payload."""


class ConversionPreconditionError(ScheduleError):
    """Entry lacks the fields required to become an event."""
