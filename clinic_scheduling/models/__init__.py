"""Data models for the scheduling layer."""

from .booking import AppointmentRequest, AppointmentResult
from .conversation import (
    AppointmentType,
    ClientInfo,
    ConversationRecord,
    ConversationStep,
    ExistingAppointment,
    HistoryEntry,
    InsuranceInfo,
    Intent,
    Provider,
    RecordUpdate,
    SelectedSlot,
    TurnResponse,
    append_turn,
    apply_update,
)
from .verification import IdentityResult, InsuranceResult

__all__ = [
    "AppointmentRequest",
    "AppointmentResult",
    "AppointmentType",
    "ClientInfo",
    "ConversationRecord",
    "ConversationStep",
    "ExistingAppointment",
    "HistoryEntry",
    "IdentityResult",
    "InsuranceInfo",
    "InsuranceResult",
    "Intent",
    "Provider",
    "RecordUpdate",
    "SelectedSlot",
    "TurnResponse",
    "append_turn",
    "apply_update",
]
