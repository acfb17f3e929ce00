"""Pydantic models for the per-call conversation record and turn responses.

A ``ConversationRecord`` is never mutated in place. Handlers describe
changes as a ``RecordUpdate`` and the driver produces the next record with
``apply_update`` / ``append_turn``, so every change to a call is a
single, replayable step.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from clinic_scheduling.errors import ErrorKind


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class CamelModel(BaseModel):
    """Snake-case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Enumerations ────────────────────────────────────────────────────


class ConversationStep(str, Enum):
    GREETING = "greeting"
    VERIFICATION = "verification"
    APPOINTMENT_TYPE = "appointment_type"
    PROVIDER_SELECTION = "provider_selection"
    DATE_SELECTION = "date_selection"
    TIME_SELECTION = "time_selection"
    INSURANCE_VERIFICATION = "insurance_verification"
    CONFIRMATION = "confirmation"
    COMPLETED = "completed"
    MODIFICATION = "modification"
    VERIFICATION_FAILED = "verification_failed"
    RESCHEDULING = "rescheduling"
    CANCELLATION = "cancellation"
    ERROR = "error"


class Intent(str, Enum):
    SCHEDULE = "schedule"
    RESCHEDULE = "reschedule"
    CANCEL = "cancel"
    GENERAL = "general"


class AppointmentType(str, Enum):
    COMPREHENSIVE_EVALUATION = "comprehensive_evaluation"
    FOLLOW_UP = "follow_up"
    KETAMINE_CONSULTATION = "ketamine_consultation"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


# ── Value objects ───────────────────────────────────────────────────


class DayHours(CamelModel):
    """Working hours for one weekday, ``HH:MM`` 24-hour strings."""

    model_config = ConfigDict(frozen=True)

    start: str
    end: str


class Provider(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    schedule: dict[str, DayHours] = {}
    follow_up_only: bool = False


class ClientInfo(CamelModel):
    id: str
    name: str
    phone: str = ""
    date_of_birth: str = ""
    member_id: Optional[str] = None
    insurance_provider: Optional[str] = None


class InsuranceInfo(CamelModel):
    provider: str
    verified: bool = False
    copay: Optional[float] = None
    deductible: Optional[float] = None
    deductible_met: Optional[bool] = None
    self_pay: bool = False


class SelectedSlot(CamelModel):
    provider_id: str
    provider_name: str
    date: str  # YYYY-MM-DD
    time: str  # HH:MM
    appointment_type: AppointmentType


class ExistingAppointment(CamelModel):
    """An appointment already on the books (reschedule / cancel flows)."""

    id: str
    provider_id: str
    provider_name: str = ""
    appointment_type: AppointmentType
    date: str
    time: str

    def describe(self) -> str:
        who = self.provider_name or self.provider_id
        return f"{self.appointment_type.label} with {who} on {self.date} at {self.time}"


class HistoryEntry(CamelModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "agent"]
    content: str
    timestamp: datetime


# ── Conversation record ─────────────────────────────────────────────


class ConversationRecord(CamelModel):
    """Everything known about one call. Owned by the ConversationStore."""

    call_id: str
    step: ConversationStep = ConversationStep.GREETING
    intent: Optional[Intent] = None

    client_verified: bool = False
    client_info: Optional[ClientInfo] = None
    verification_attempts: int = 0

    insurance_verified: bool = False
    insurance_info: Optional[InsuranceInfo] = None
    self_pay_offered: bool = False

    appointment_type: Optional[AppointmentType] = None
    preferred_provider: Optional[Provider] = None
    preferred_date: Optional[str] = None
    preferred_time: Optional[str] = None
    available_slots: list[str] = []
    selected_slot: Optional[SelectedSlot] = None

    upcoming_appointments: list[ExistingAppointment] = []
    target_appointment: Optional[ExistingAppointment] = None
    appointment_id: Optional[str] = None

    conversation_history: list[HistoryEntry] = []
    start_time: datetime
    last_activity: datetime

    @classmethod
    def new(cls, call_id: str) -> "ConversationRecord":
        now = utcnow()
        return cls(call_id=call_id, start_time=now, last_activity=now)

    @property
    def is_rescheduling(self) -> bool:
        return self.intent == Intent.RESCHEDULE and self.target_appointment is not None

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe view for the calling layer (camelCase keys)."""
        return self.model_dump(mode="json", by_alias=True)


class RecordUpdate(BaseModel):
    """A partial change to a ConversationRecord.

    Only the fields explicitly passed to the constructor are applied, so
    ``RecordUpdate(target_appointment=None)`` clears a field while
    ``RecordUpdate(step=...)`` leaves it untouched.
    """

    step: Optional[ConversationStep] = None
    intent: Optional[Intent] = None
    client_verified: Optional[bool] = None
    client_info: Optional[ClientInfo] = None
    verification_attempts: Optional[int] = None
    insurance_verified: Optional[bool] = None
    insurance_info: Optional[InsuranceInfo] = None
    self_pay_offered: Optional[bool] = None
    appointment_type: Optional[AppointmentType] = None
    preferred_provider: Optional[Provider] = None
    preferred_date: Optional[str] = None
    preferred_time: Optional[str] = None
    available_slots: Optional[list[str]] = None
    selected_slot: Optional[SelectedSlot] = None
    upcoming_appointments: Optional[list[ExistingAppointment]] = None
    target_appointment: Optional[ExistingAppointment] = None
    appointment_id: Optional[str] = None

    def changes(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.model_fields_set}


# Upstream selections, in flow order. Changing one invalidates the rest.
_SELECTION_CHAIN = ("appointment_type", "preferred_provider", "preferred_date", "preferred_time")
_DERIVED_DEFAULTS: dict[str, Any] = {
    "available_slots": [],
    "selected_slot": None,
    "insurance_verified": False,
}

_NON_NULLABLE = {
    "step", "client_verified", "verification_attempts", "insurance_verified",
    "self_pay_offered", "available_slots", "upcoming_appointments",
}


def apply_update(record: ConversationRecord, update: RecordUpdate) -> ConversationRecord:
    """Return a new record with ``update`` applied and ``last_activity`` refreshed.

    Setting an upstream selection (type, provider, date, time) resets the
    selections after it and the derived slot/insurance fields, unless the
    same update sets them explicitly.
    """
    changes = update.changes()
    for name in _NON_NULLABLE:
        if name in changes and changes[name] is None:
            raise ValueError(f"{name} cannot be cleared")

    cascade: dict[str, Any] = {}
    touched = [name for name in _SELECTION_CHAIN if name in changes]
    if touched:
        first = min(_SELECTION_CHAIN.index(name) for name in touched)
        for name in _SELECTION_CHAIN[first + 1:]:
            cascade[name] = None
        cascade.update(_DERIVED_DEFAULTS)
    cascade.update(changes)
    cascade["last_activity"] = utcnow()

    updated = record.model_copy(update=cascade)
    if updated.insurance_verified and not (updated.client_verified and updated.selected_slot):
        raise ValueError(
            "insurance cannot be verified before the client is verified and a slot is selected"
        )
    return updated


def append_turn(record: ConversationRecord, user_text: str, agent_text: str) -> ConversationRecord:
    """Return a new record with one user/agent exchange appended to the history."""
    now = utcnow()
    history = list(record.conversation_history)
    history.append(HistoryEntry(role="user", content=user_text, timestamp=now))
    history.append(HistoryEntry(role="agent", content=agent_text, timestamp=utcnow()))
    return record.model_copy(update={"conversation_history": history, "last_activity": now})


# ── Turn response ───────────────────────────────────────────────────


class TurnResponse(CamelModel):
    """What the driver hands back to the calling layer for one turn."""

    message: str
    next_step: ConversationStep
    options: Optional[list[str]] = None
    requires_verification: Optional[bool] = None
    requires_transfer: Optional[bool] = None

    client_info: Optional[ClientInfo] = None
    appointment_type: Optional[AppointmentType] = None
    providers: Optional[list[Provider]] = None
    provider: Optional[Provider] = None
    available_dates: Optional[list[str]] = None
    date: Optional[str] = None
    available_times: Optional[list[str]] = None
    selected_slot: Optional[SelectedSlot] = None
    self_pay_option: Optional[bool] = None
    insurance_info: Optional[InsuranceInfo] = None
    appointment_details: Optional[dict[str, Any]] = None
    appointments: Optional[list[ExistingAppointment]] = None
    appointment_id: Optional[str] = None
    confirmation_sent: Optional[bool] = None
    attempts_remaining: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
