"""Collaborators the conversation depends on: identity, insurance, appointments."""

from .availability import TTLAvailabilityCache
from .availity import AvailityClient
from .base import AppointmentBackend, AvailabilityCache, IdentityVerifier, InsuranceVerifier
from .demo import DemoClientDirectory, DemoInsuranceVerifier, InMemoryAppointmentBackend
from .intakeq import IntakeQClient
from .verification import VerificationService

__all__ = [
    "AppointmentBackend",
    "AvailabilityCache",
    "AvailityClient",
    "DemoClientDirectory",
    "DemoInsuranceVerifier",
    "IdentityVerifier",
    "InMemoryAppointmentBackend",
    "InsuranceVerifier",
    "IntakeQClient",
    "TTLAvailabilityCache",
    "VerificationService",
]
