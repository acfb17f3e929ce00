"""Pydantic models for appointment requests and responses."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from .conversation import AppointmentType


class AppointmentRequest(BaseModel):
    """Data collected from the caller to book a visit."""

    client_id: str
    provider_id: str
    appointment_type: AppointmentType
    date: str  # YYYY-MM-DD
    time: str  # HH:MM
    duration_minutes: int
    insurance_verified: bool = False
    insurance_provider: Optional[str] = None
    copay: Optional[float] = None
    self_pay: bool = False
    location: str = "in-person"
    notes: str = ""

    @property
    def start_time(self) -> datetime:
        return datetime.strptime(f"{self.date} {self.time}", "%Y-%m-%d %H:%M")

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration_minutes)


class AppointmentResult(BaseModel):
    """Result returned after a booking, reschedule or cancellation attempt."""

    success: bool
    appointment_id: Optional[str] = None
    error: Optional[str] = None
