"""Exceptions raised by the conversation store and collaborator clients.

Extraction misses, failed verifications and taken slots are ordinary
conversational branches handled inside the step handlers; only the
conditions below escape as exceptions.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Label attached to error responses returned to the calling layer."""

    UNKNOWN_CALL = "unknown_call"
    COLLABORATOR_FAILURE = "collaborator_failure"


class SchedulingError(Exception):
    """Base class for clinic_scheduling errors."""


class DuplicateCallError(SchedulingError):
    """A conversation already exists for this call identifier."""

    def __init__(self, call_id: str) -> None:
        super().__init__(f"Conversation already exists for call {call_id}")
        self.call_id = call_id


class CallNotFoundError(SchedulingError):
    """No conversation exists for this call identifier."""

    def __init__(self, call_id: str) -> None:
        super().__init__(f"No conversation found for call {call_id}")
        self.call_id = call_id


class CollaboratorError(SchedulingError):
    """An external service (practice management, eligibility) failed."""

    def __init__(self, service: str, message: str, status_code: int | None = None) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service
        self.status_code = status_code
