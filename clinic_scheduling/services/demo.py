"""In-memory collaborators for local runs and tests.

Used when IntakeQ / Availity credentials are not configured. The client
directory holds two sample clients and the appointment book starts empty.
"""

from __future__ import annotations

import logging
import secrets
from typing import Optional

from clinic_scheduling.directory import DomainDirectory
from clinic_scheduling.models.booking import AppointmentRequest, AppointmentResult
from clinic_scheduling.models.conversation import ClientInfo, ExistingAppointment
from clinic_scheduling.models.verification import InsuranceResult
from clinic_scheduling.services.base import AppointmentBackend, InsuranceVerifier

log = logging.getLogger("clinic_scheduling.services.demo")

SAMPLE_CLIENTS = [
    ClientInfo(
        id="client_001",
        name="John Doe",
        phone="+19041234567",
        date_of_birth="1985-03-15",
        member_id="BC123456789",
        insurance_provider="blue cross blue shield",
    ),
    ClientInfo(
        id="client_002",
        name="Jane Smith",
        phone="+19047654321",
        date_of_birth="1990-07-22",
        member_id="AE987654321",
        insurance_provider="aetna",
    ),
]


class DemoClientDirectory:
    """Client lookup over a fixed list; plugs into VerificationService."""

    def __init__(self, clients: list[ClientInfo] | None = None) -> None:
        self._clients = list(SAMPLE_CLIENTS if clients is None else clients)

    async def find_client(self, phone_number: str, date_of_birth: str) -> Optional[ClientInfo]:
        for client in self._clients:
            if client.phone == phone_number and client.date_of_birth == date_of_birth:
                return client
        return None


class DemoInsuranceVerifier(InsuranceVerifier):
    """Any accepted insurer verifies with a flat copay and deductible."""

    def __init__(
        self,
        directory: DomainDirectory,
        copay: float = 25.0,
        deductible: float = 1000.0,
    ) -> None:
        self._directory = directory
        self._copay = copay
        self._deductible = deductible

    async def verify(self, insurer: str, member_fields: dict) -> InsuranceResult:
        if not self._directory.is_accepted_insurer(insurer):
            return InsuranceResult(
                verified=False,
                provider=insurer,
                error=f"{insurer} is not accepted",
            )
        return InsuranceResult(
            verified=True,
            provider=insurer,
            copay=self._copay,
            deductible=self._deductible,
            deductible_met=False,
        )


class InMemoryAppointmentBackend(AppointmentBackend):
    """Appointment book kept in a dict; free slots come from the weekly schedule."""

    def __init__(self, directory: DomainDirectory) -> None:
        self._directory = directory
        self._appointments: dict[str, ExistingAppointment] = {}
        self._owners: dict[str, str] = {}

    def add_existing(self, client_id: str, appointment: ExistingAppointment) -> None:
        """Seed an appointment that was booked before this process started."""
        self._appointments[appointment.id] = appointment
        self._owners[appointment.id] = client_id

    def _is_taken(self, provider_id: str, date: str, time: str) -> bool:
        return any(
            a.provider_id == provider_id and a.date == date and a.time == time
            for a in self._appointments.values()
        )

    def _to_appointment(self, appointment_id: str, request: AppointmentRequest) -> ExistingAppointment:
        provider = self._directory.provider(request.provider_id)
        return ExistingAppointment(
            id=appointment_id,
            provider_id=request.provider_id,
            provider_name=provider.name if provider else "",
            appointment_type=request.appointment_type,
            date=request.date,
            time=request.time,
        )

    async def create(self, request: AppointmentRequest) -> AppointmentResult:
        if self._is_taken(request.provider_id, request.date, request.time):
            return AppointmentResult(success=False, error="That time slot is already booked")
        appointment_id = f"apt_{secrets.token_hex(6)}"
        self.add_existing(request.client_id, self._to_appointment(appointment_id, request))
        log.info("Demo appointment created: %s", appointment_id)
        return AppointmentResult(success=True, appointment_id=appointment_id)

    async def reschedule(
        self, appointment_id: str, request: AppointmentRequest
    ) -> AppointmentResult:
        if appointment_id not in self._appointments:
            return AppointmentResult(success=False, error="Appointment not found")
        if self._is_taken(request.provider_id, request.date, request.time):
            return AppointmentResult(success=False, error="That time slot is already booked")
        self._appointments[appointment_id] = self._to_appointment(appointment_id, request)
        log.info("Demo appointment rescheduled: %s", appointment_id)
        return AppointmentResult(success=True, appointment_id=appointment_id)

    async def cancel(self, appointment_id: str, reason: str = "") -> AppointmentResult:
        if self._appointments.pop(appointment_id, None) is None:
            return AppointmentResult(success=False, error="Appointment not found")
        self._owners.pop(appointment_id, None)
        log.info("Demo appointment cancelled: %s", appointment_id)
        return AppointmentResult(success=True, appointment_id=appointment_id)

    async def upcoming(self, client_id: str) -> list[ExistingAppointment]:
        mine = [
            a for a in self._appointments.values()
            if self._owners.get(a.id) == client_id
        ]
        return sorted(mine, key=lambda a: (a.date, a.time))

    async def available_slots(self, provider_id: str, date: str) -> list[str]:
        provider = self._directory.provider(provider_id)
        if provider is None:
            return []
        return [
            time for time in self._directory.available_times(provider, date)
            if not self._is_taken(provider_id, date, time)
        ]
