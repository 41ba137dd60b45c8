"""
Error taxonomy shared by the API and the meeting agent services.

Every error carries the HTTP status the API layer should answer with.
"""
from typing import Any, Dict, Optional


class MeetingAgentError(Exception):
    """Base error for the meeting agent."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(MeetingAgentError):
    """Invalid input: missing fields, bad time range, join outside the window."""

    status_code = 400


class NotYetJoinableError(ValidationError):
    """The meeting cannot be joined yet."""


class AlreadyEndedError(ValidationError):
    """The meeting is over."""


class NotFoundError(MeetingAgentError):
    status_code = 404


class ConflictError(MeetingAgentError):
    """Duplicate record or attendee availability conflict."""

    status_code = 409


class UpstreamError(MeetingAgentError):
    """A Graph, AI or database call failed. The upstream message is passed through."""

    status_code = 500

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.upstream_status = upstream_status


class ServiceUnavailableError(MeetingAgentError):
    """A required collaborator is not configured."""

    status_code = 503
