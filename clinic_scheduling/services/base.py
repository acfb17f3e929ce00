"""Abstract base classes for the services the conversation depends on.

Any backend (IntakeQ, Availity, an in-memory demo) implements these ABCs.
The step handlers only ever talk to these interfaces.
"""

from abc import ABC, abstractmethod

from clinic_scheduling.models.booking import AppointmentRequest, AppointmentResult
from clinic_scheduling.models.conversation import ExistingAppointment
from clinic_scheduling.models.verification import IdentityResult, InsuranceResult


class IdentityVerifier(ABC):
    """Confirms a caller is a known client."""

    @abstractmethod
    async def verify(self, phone_number: str, date_of_birth: str) -> IdentityResult:
        """Match a phone number and date of birth against client records.

        Args:
            phone_number: Phone number as spoken, any common format.
            date_of_birth: ``MM/DD/YYYY`` or ``YYYY-MM-DD``.

        Returns:
            IdentityResult with ``client_info`` set when verified.
        """


class InsuranceVerifier(ABC):
    """Checks insurance eligibility."""

    @abstractmethod
    async def verify(self, insurer: str, member_fields: dict) -> InsuranceResult:
        """Check coverage for a member.

        Args:
            insurer: Insurer name (lower-case accepted name).
            member_fields: ``client_id``, ``name``, ``date_of_birth`` and,
                when on file, ``member_id``.

        Returns:
            InsuranceResult with copay/deductible when verified.
        """


class AppointmentBackend(ABC):
    """Practice-management system holding the appointment book."""

    @abstractmethod
    async def create(self, request: AppointmentRequest) -> AppointmentResult:
        """Book a new appointment."""

    @abstractmethod
    async def reschedule(
        self, appointment_id: str, request: AppointmentRequest
    ) -> AppointmentResult:
        """Move an existing appointment to the slot described by ``request``."""

    @abstractmethod
    async def cancel(self, appointment_id: str, reason: str = "") -> AppointmentResult:
        """Cancel an existing appointment."""

    @abstractmethod
    async def upcoming(self, client_id: str) -> list[ExistingAppointment]:
        """Future appointments for a client, soonest first."""

    @abstractmethod
    async def available_slots(self, provider_id: str, date: str) -> list[str]:
        """Free ``HH:MM`` start times for a provider on a date."""


class AvailabilityCache(ABC):
    """Read-through cache in front of ``AppointmentBackend.available_slots``."""

    @abstractmethod
    async def get(self, provider_id: str, date: str) -> list[str]:
        """Cached free slots, loading from the backend on a miss."""

    @abstractmethod
    def invalidate(self, provider_id: str, date: str) -> None:
        """Forget the cached slots for one provider/date."""
