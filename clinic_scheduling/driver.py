"""Dialogue driver: one entry point per call event.

Typical lifecycle::

    driver = build_driver()
    welcome = driver.start_call("CA123")
    # → speak welcome.message

    while call is live:
        response = await driver.process_message("CA123", caller_text)
        # → speak response.message, transfer if response.requires_transfer

    await driver.end_call("CA123")

Each ``process_message`` runs under the call's lock: read the record,
run the step handler, then apply its update and append the user/agent
pair in a single store write. A handler that raises leaves every field
of the record as it was. Ending a call takes the same lock, so it waits
for a turn in flight rather than racing it.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from clinic_scheduling.audit import get_audit_trail, remove_audit_trail
from clinic_scheduling.config import Settings, settings as default_settings
from clinic_scheduling.directory import DomainDirectory
from clinic_scheduling.errors import CallNotFoundError, ErrorKind
from clinic_scheduling.handlers import StepHandlers
from clinic_scheduling.models.conversation import (
    ConversationStep,
    TurnResponse,
    append_turn,
    apply_update,
)
from clinic_scheduling.services.availability import TTLAvailabilityCache
from clinic_scheduling.services.availity import AvailityClient
from clinic_scheduling.services.base import (
    AppointmentBackend,
    AvailabilityCache,
    IdentityVerifier,
    InsuranceVerifier,
)
from clinic_scheduling.services.demo import (
    DemoClientDirectory,
    DemoInsuranceVerifier,
    InMemoryAppointmentBackend,
)
from clinic_scheduling.services.intakeq import IntakeQClient
from clinic_scheduling.services.verification import VerificationService
from clinic_scheduling.store import ConversationStore

log = logging.getLogger("clinic_scheduling.driver")

TRANSFER_MESSAGE = (
    "I'm sorry, I'm having trouble processing your request. "
    "Let me transfer you to our front desk for assistance."
)


def error_response(kind: ErrorKind) -> TurnResponse:
    """The fixed transfer-to-front-desk reply used for every failure."""
    return TurnResponse(
        message=TRANSFER_MESSAGE,
        next_step=ConversationStep.ERROR,
        requires_transfer=True,
        error_kind=kind,
    )


class DialogueDriver:
    """Routes caller utterances through the step handlers for each call."""

    def __init__(
        self,
        directory: DomainDirectory,
        identity: IdentityVerifier,
        insurance: InsuranceVerifier,
        appointments: AppointmentBackend,
        availability: AvailabilityCache | None = None,
        store: ConversationStore | None = None,
        config: Settings | None = None,
    ) -> None:
        self.config = config or default_settings
        self.store = store or ConversationStore()
        self.handlers = StepHandlers(
            directory=directory,
            identity=identity,
            insurance=insurance,
            appointments=appointments,
            availability=availability or TTLAvailabilityCache(appointments),
            config=self.config,
        )

    # ── Call lifecycle ──────────────────────────────────────────

    def start_call(self, call_id: str) -> TurnResponse:
        """Create the call's record and return the opening prompt.

        Raises DuplicateCallError if the call is already active.
        """
        record = self.store.create(call_id)
        get_audit_trail(call_id).emit("call_start", record.step.value, {})
        log.info("Conversation initialized for call: %s", call_id)
        return self.handlers.welcome_response()

    async def process_message(self, call_id: str, text: str) -> TurnResponse:
        async with self.store.lock(call_id):
            record = self.store.get(call_id)
            if record is None:
                log.error("No conversation state found for call: %s", call_id)
                return error_response(ErrorKind.UNKNOWN_CALL)

            try:
                outcome = await self.handlers.handle(record, text)
                updated = apply_update(record, outcome.update)
                response = outcome.response
            except Exception:
                log.exception("Error processing message for call %s at step %s",
                              call_id, record.step.value)
                get_audit_trail(call_id).emit("error", record.step.value, {
                    "error_kind": ErrorKind.COLLABORATOR_FAILURE.value,
                })
                updated, response = record, error_response(ErrorKind.COLLABORATOR_FAILURE)

            try:
                self.store.replace(
                    call_id, append_turn(updated, text, response.message), expected=record,
                )
            except CallNotFoundError:
                log.warning("Call %s ended during its turn; result discarded", call_id)
                if call_id not in self.store:
                    remove_audit_trail(call_id)
                return error_response(ErrorKind.UNKNOWN_CALL)

            if updated.step != record.step:
                get_audit_trail(call_id).emit("transition", updated.step.value, {
                    "from": record.step.value,
                    "to": updated.step.value,
                })
        return response

    async def end_call(self, call_id: str) -> bool:
        """Forget a call once any turn in flight has finished. Safe to call more than once."""
        async with self.store.lock(call_id):
            record = self.store.get(call_id)
            if not self.store.remove(call_id):
                return False
            get_audit_trail(call_id).emit("call_end", record.step.value if record else "", {
                "turns": len(record.conversation_history) // 2 if record else 0,
                "appointment_id": record.appointment_id if record else None,
            })
            remove_audit_trail(call_id)
        log.info("Conversation state cleaned up for call: %s", call_id)
        return True

    def get_snapshot(self, call_id: str) -> Optional[dict[str, Any]]:
        record = self.store.get(call_id)
        return record.snapshot() if record else None

    # ── Expiry ──────────────────────────────────────────────────

    async def sweep_stale(
        self, max_idle: timedelta | None = None, now: datetime | None = None
    ) -> list[str]:
        """End every call idle for longer than ``max_idle`` (default: session timeout)."""
        if max_idle is None:
            max_idle = timedelta(seconds=self.config.session_idle_timeout_seconds)
        expired = [
            call_id for call_id in self.store.stale_call_ids(max_idle, now=now)
            if await self.end_call(call_id)
        ]
        if expired:
            log.info("Expired %d idle call(s)", len(expired))
        return expired

    async def run_stale_sweeper(self, interval: float = 60.0) -> None:
        """Background task: sweep idle calls every ``interval`` seconds until cancelled."""
        log.info("Stale call sweeper started (every %.0fs)", interval)
        while True:
            await asyncio.sleep(interval)
            await self.sweep_stale()


def build_driver(config: Settings | None = None) -> DialogueDriver:
    """Wire a driver to IntakeQ / Availity when configured, else to the demo services."""
    config = config or default_settings
    directory = DomainDirectory(config)

    appointments: AppointmentBackend
    if config.intakeq_api_key:
        intakeq = IntakeQClient(
            base_url=config.intakeq_base_url,
            api_key=config.intakeq_api_key,
            clinic_id=config.intakeq_clinic_id,
            timeout=config.http_timeout_seconds,
        )
        appointments, lookup = intakeq, intakeq.find_client
    else:
        appointments = InMemoryAppointmentBackend(directory)
        lookup = DemoClientDirectory().find_client

    insurance: InsuranceVerifier
    if config.availity_api_key and config.availity_secret:
        insurance = AvailityClient(
            base_url=config.availity_base_url,
            api_key=config.availity_api_key,
            secret=config.availity_secret,
            timeout=config.http_timeout_seconds,
        )
    else:
        insurance = DemoInsuranceVerifier(directory)

    return DialogueDriver(
        directory=directory,
        identity=VerificationService(
            lookup,
            max_attempts=config.verification_max_attempts,
            lockout_seconds=config.verification_lockout_seconds,
        ),
        insurance=insurance,
        appointments=appointments,
        availability=TTLAvailabilityCache(
            appointments, ttl_seconds=config.availability_cache_ttl_seconds
        ),
        config=config,
    )
