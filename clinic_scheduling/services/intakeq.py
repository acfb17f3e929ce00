"""IntakeQ practice-management client.

Client lookup (identity verification), the appointment book and provider
availability all live in IntakeQ. Only the fields the conversation uses
are read from responses.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from clinic_scheduling.audit import mask_phone_number
from clinic_scheduling.config import settings
from clinic_scheduling.errors import CollaboratorError
from clinic_scheduling.models.booking import AppointmentRequest, AppointmentResult
from clinic_scheduling.models.conversation import (
    AppointmentType,
    ClientInfo,
    ExistingAppointment,
)
from clinic_scheduling.services.base import AppointmentBackend

log = logging.getLogger("clinic_scheduling.services.intakeq")

SERVICE = "intakeq"


class IntakeQClient(AppointmentBackend):
    """AppointmentBackend and client directory backed by the IntakeQ REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        clinic_id: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = (base_url or settings.intakeq_base_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.intakeq_api_key
        self._clinic_id = clinic_id if clinic_id is not None else settings.intakeq_clinic_id
        self._timeout = timeout or settings.http_timeout_seconds
        self._transport = transport

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Accept": "application/json",
            },
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            async with self._client() as client:
                resp = await client.request(method, path, **kwargs)
                resp.raise_for_status()
                return resp.json() if resp.content else {}
        except httpx.HTTPStatusError as exc:
            log.error("IntakeQ %s %s failed: status %s", method, path, exc.response.status_code)
            raise CollaboratorError(
                SERVICE, f"{method} {path} returned {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            log.error("IntakeQ %s %s failed: %s", method, path, exc)
            raise CollaboratorError(SERVICE, f"{method} {path} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    async def find_client(self, phone_number: str, date_of_birth: str) -> Optional[ClientInfo]:
        """Look up a client by normalized phone and date of birth."""
        data = await self._request(
            "GET", "/clients",
            params={
                "phone": phone_number,
                "date_of_birth": date_of_birth,
                "clinic_id": self._clinic_id,
            },
        )
        if not data:
            log.info("No IntakeQ client for %s", mask_phone_number(phone_number))
            return None
        return self._parse_client(data[0])

    @staticmethod
    def _parse_client(raw: dict) -> ClientInfo:
        name = raw.get("name") or " ".join(
            part for part in (raw.get("first_name"), raw.get("last_name")) if part
        )
        insurance = raw.get("insurance") or {}
        return ClientInfo(
            id=str(raw["id"]),
            name=name,
            phone=raw.get("phone", ""),
            date_of_birth=raw.get("date_of_birth", ""),
            member_id=insurance.get("member_id"),
            insurance_provider=insurance.get("provider"),
        )

    # ------------------------------------------------------------------
    # AppointmentBackend interface
    # ------------------------------------------------------------------

    def _appointment_payload(self, request: AppointmentRequest) -> dict:
        return {
            "clinic_id": self._clinic_id,
            "client_id": request.client_id,
            "provider_id": request.provider_id,
            "appointment_type": request.appointment_type.value,
            "start_time": request.start_time.isoformat(),
            "end_time": request.end_time.isoformat(),
            "location": request.location,
            "notes": request.notes,
            "insurance_verified": request.insurance_verified,
            "copay_amount": request.copay,
            "self_pay": request.self_pay,
        }

    async def create(self, request: AppointmentRequest) -> AppointmentResult:
        payload = self._appointment_payload(request)
        payload["status"] = "scheduled"
        data = await self._request("POST", "/appointments", json=payload)
        appointment_id = data.get("id")
        if not appointment_id:
            return AppointmentResult(success=False, error="IntakeQ did not return an appointment id")
        log.info("Appointment created in IntakeQ: %s", appointment_id)
        return AppointmentResult(success=True, appointment_id=str(appointment_id))

    async def reschedule(
        self, appointment_id: str, request: AppointmentRequest
    ) -> AppointmentResult:
        payload = {
            "start_time": request.start_time.isoformat(),
            "end_time": request.end_time.isoformat(),
            "provider_id": request.provider_id,
            "status": "rescheduled",
        }
        await self._request("PUT", f"/appointments/{appointment_id}", json=payload)
        log.info("Appointment rescheduled in IntakeQ: %s", appointment_id)
        return AppointmentResult(success=True, appointment_id=appointment_id)

    async def cancel(self, appointment_id: str, reason: str = "") -> AppointmentResult:
        payload = {
            "status": "cancelled",
            "cancellation_reason": reason or None,
            "cancelled_at": datetime.now(tz=timezone.utc).isoformat(),
        }
        await self._request("PUT", f"/appointments/{appointment_id}", json=payload)
        log.info("Appointment cancelled in IntakeQ: %s", appointment_id)
        return AppointmentResult(success=True, appointment_id=appointment_id)

    async def upcoming(self, client_id: str) -> list[ExistingAppointment]:
        data = await self._request(
            "GET", f"/clients/{client_id}/appointments/upcoming",
            params={"clinic_id": self._clinic_id},
        )
        appointments = []
        for raw in data or []:
            try:
                appointments.append(self._parse_appointment(raw))
            except (KeyError, ValueError) as exc:
                log.warning("Skipping malformed IntakeQ appointment %s: %s", raw.get("id"), exc)
        return sorted(appointments, key=lambda a: (a.date, a.time))

    @staticmethod
    def _parse_appointment(raw: dict) -> ExistingAppointment:
        start = datetime.fromisoformat(raw["start_time"])
        return ExistingAppointment(
            id=str(raw["id"]),
            provider_id=raw["provider_id"],
            provider_name=raw.get("provider_name", ""),
            appointment_type=AppointmentType(raw["appointment_type"]),
            date=start.date().isoformat(),
            time=start.strftime("%H:%M"),
        )

    async def available_slots(self, provider_id: str, date: str) -> list[str]:
        data = await self._request(
            "GET", "/appointments/available-slots",
            params={"provider_id": provider_id, "date": date, "clinic_id": self._clinic_id},
        )
        slots = data.get("slots", []) if isinstance(data, dict) else data
        times = []
        for slot in slots or []:
            if isinstance(slot, str):
                times.append(slot)
            elif slot.get("available", True):
                times.append(slot["time"])
        return times
