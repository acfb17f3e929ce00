"""One handler per conversation step.

A handler reads a snapshot of the call's record plus the caller's
utterance and returns a ``StepOutcome``: the response to speak and the
``RecordUpdate`` the driver should apply. Handlers never write to the
store. Anything that goes wrong inside a collaborator is allowed to raise;
the driver turns it into the transfer-to-front-desk response.

An utterance a handler cannot parse re-issues that step's prompt with
freshly computed options and leaves ``step`` where it is.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from clinic_scheduling.audit import get_audit_trail
from clinic_scheduling.config import Settings, settings as default_settings
from clinic_scheduling.directory import APPOINTMENT_LABELS, DomainDirectory
from clinic_scheduling.extractors import (
    ChangeTarget,
    Confirmation,
    extract_appointment_type,
    extract_change_target,
    extract_choice,
    extract_confirmation,
    extract_date,
    extract_identity,
    extract_insurance,
    extract_intent,
    extract_provider,
    extract_time,
    states_meridiem,
    wants_self_pay,
)
from clinic_scheduling.models.booking import AppointmentRequest
from clinic_scheduling.models.conversation import (
    AppointmentType,
    ClientInfo,
    ConversationRecord,
    ConversationStep,
    ExistingAppointment,
    InsuranceInfo,
    Intent,
    Provider,
    RecordUpdate,
    SelectedSlot,
    TurnResponse,
)
from clinic_scheduling.services.base import (
    AppointmentBackend,
    AvailabilityCache,
    IdentityVerifier,
    InsuranceVerifier,
)

log = logging.getLogger("clinic_scheduling.handlers")

# Spoken option lists are capped so the caller is not read a month of dates.
OPTION_LIMIT = 5

YES_NO = ["Yes", "No"]
CHANGE_OPTIONS = ["Appointment type", "Provider", "Date", "Time"]
MENU_OPTIONS = ["Schedule an appointment", "Reschedule an appointment", "Cancel an appointment"]
SELF_PAY_PROVIDER = "self-pay"


@dataclass
class StepOutcome:
    """What a handler decided: the reply and the record change behind it."""

    response: TurnResponse
    update: RecordUpdate = field(default_factory=RecordUpdate)


Handler = Callable[[ConversationRecord, str], Awaitable[StepOutcome]]


def _money(amount: float) -> str:
    return f"${amount:.0f}" if float(amount).is_integer() else f"${amount:.2f}"


def _afternoon(hhmm: str) -> Optional[str]:
    """The pm reading of a morning ``HH:MM``, or None if there is none."""
    hour, minute = hhmm.split(":")
    if not 1 <= int(hour) < 12:
        return None
    return f"{int(hour) + 12:02d}:{minute}"


def _describe(
    appointment_type: Optional[AppointmentType],
    provider_name: str,
    date: Optional[str],
    time: Optional[str],
) -> str:
    label = APPOINTMENT_LABELS[appointment_type].lower() if appointment_type else "appointment"
    return f"{label} with {provider_name} on {date} at {time}"


class StepHandlers:
    """Dispatches an utterance to the handler for the record's current step."""

    def __init__(
        self,
        directory: DomainDirectory,
        identity: IdentityVerifier,
        insurance: InsuranceVerifier,
        appointments: AppointmentBackend,
        availability: AvailabilityCache,
        config: Settings | None = None,
    ) -> None:
        self.directory = directory
        self.identity = identity
        self.insurance = insurance
        self.appointments = appointments
        self.availability = availability
        self.config = config or default_settings

        self._handlers: dict[ConversationStep, Handler] = {
            ConversationStep.GREETING: self.greeting,
            ConversationStep.VERIFICATION: self.verification,
            ConversationStep.VERIFICATION_FAILED: self.verification_failed,
            ConversationStep.APPOINTMENT_TYPE: self.appointment_type,
            ConversationStep.PROVIDER_SELECTION: self.provider_selection,
            ConversationStep.DATE_SELECTION: self.date_selection,
            ConversationStep.TIME_SELECTION: self.time_selection,
            ConversationStep.INSURANCE_VERIFICATION: self.insurance_verification,
            ConversationStep.CONFIRMATION: self.confirmation,
            ConversationStep.MODIFICATION: self.modification,
            ConversationStep.RESCHEDULING: self.rescheduling,
            ConversationStep.CANCELLATION: self.cancellation,
            ConversationStep.COMPLETED: self.completed,
        }

    async def handle(self, record: ConversationRecord, text: str) -> StepOutcome:
        handler = self._handlers.get(record.step, self.general_inquiry)
        log.debug("Call %s: dispatching step %s", record.call_id, record.step.value)
        return await handler(record, text)

    # ── Messages ────────────────────────────────────────────────

    @property
    def _introduction(self) -> str:
        return f"Hello! I'm {self.config.agent_name} from {self.config.practice_name}"

    def welcome_response(self) -> TurnResponse:
        return TurnResponse(
            message=(
                f"{self._introduction} psychiatric wellness clinic. How can I help you "
                "today? I can assist with scheduling, rescheduling, or canceling appointments."
            ),
            next_step=ConversationStep.GREETING,
            options=MENU_OPTIONS,
        )

    def _appointment_type_prompt(self, lead: str) -> TurnResponse:
        options = self.directory.appointment_type_options()
        return TurnResponse(
            message=f"{lead} You can choose from: {', '.join(options[:-1])}, or {options[-1]}.",
            next_step=ConversationStep.APPOINTMENT_TYPE,
            options=options,
        )

    def _provider_prompt(self, lead: str, appointment_type: Optional[AppointmentType]) -> TurnResponse:
        providers = self.directory.providers_for(appointment_type)
        return TurnResponse(
            message=lead,
            next_step=ConversationStep.PROVIDER_SELECTION,
            options=[p.name for p in providers],
            providers=providers,
            appointment_type=appointment_type,
        )

    def _date_prompt(self, lead: str, provider: Provider) -> TurnResponse:
        dates = self.directory.available_dates(provider)
        return TurnResponse(
            message=lead,
            next_step=ConversationStep.DATE_SELECTION,
            options=dates[:OPTION_LIMIT],
            available_dates=dates,
            provider=provider,
        )

    def _insurance_prompt(self, lead: str) -> TurnResponse:
        return TurnResponse(
            message=f"{lead} We accept {self.directory.accepted_insurers_sentence()}.",
            next_step=ConversationStep.INSURANCE_VERIFICATION,
            options=self.directory.accepted_insurer_names(),
        )

    def _slot_details(self, record: ConversationRecord, slot: SelectedSlot) -> dict[str, Any]:
        return {
            "appointment_type": slot.appointment_type.value,
            "provider": slot.provider_name,
            "date": slot.date,
            "time": slot.time,
            "duration_minutes": self.directory.duration_for(slot.appointment_type),
            "client_name": record.client_info.name if record.client_info else None,
        }

    def _confirmation_prompt(
        self, lead: str, record: ConversationRecord, slot: SelectedSlot,
        insurance_info: Optional[InsuranceInfo] = None,
    ) -> TurnResponse:
        details = _describe(slot.appointment_type, slot.provider_name, slot.date, slot.time)
        return TurnResponse(
            message=f"{lead} Let me confirm your appointment details: {details}. Is this correct?",
            next_step=ConversationStep.CONFIRMATION,
            options=YES_NO,
            selected_slot=slot,
            insurance_info=insurance_info,
            appointment_details=self._slot_details(record, slot),
        )

    # ── Greeting and identity ───────────────────────────────────

    async def greeting(self, record: ConversationRecord, text: str) -> StepOutcome:
        intent = extract_intent(text)
        if intent == Intent.GENERAL:
            return StepOutcome(self.welcome_response())

        if intent == Intent.SCHEDULE:
            lead = (
                f"{self._introduction} psychiatric wellness clinic. I'd be happy to help you "
                "schedule an appointment. For your security and HIPAA compliance, I need to "
                "verify your identity."
            )
        elif intent == Intent.RESCHEDULE:
            lead = (
                f"{self._introduction}. I can help you reschedule your appointment. "
                "For your security, I need to verify your identity first."
            )
        else:
            lead = (
                f"{self._introduction}. I can help you cancel your appointment. "
                "For your security, I need to verify your identity first."
            )

        return StepOutcome(
            TurnResponse(
                message=f"{lead} Could you please provide your phone number and date of birth?",
                next_step=ConversationStep.VERIFICATION,
                requires_verification=True,
            ),
            RecordUpdate(step=ConversationStep.VERIFICATION, intent=intent),
        )

    async def verification(self, record: ConversationRecord, text: str) -> StepOutcome:
        fields = extract_identity(text)
        if not fields.complete:
            return StepOutcome(TurnResponse(
                message=(
                    "I need both your phone number and date of birth to verify your identity. "
                    "Please provide both pieces of information."
                ),
                next_step=ConversationStep.VERIFICATION,
                requires_verification=True,
            ))

        result = await self.identity.verify(fields.phone_number, fields.date_of_birth)
        attempts = record.verification_attempts + 1
        get_audit_trail(record.call_id).emit("identity_check", record.step.value, {
            "verified": result.verified,
            "phone_number": fields.phone_number,
            "attempt": attempts,
            "locked_out": result.locked_out,
        })

        if not result.verified or result.client_info is None:
            log.info("Call %s: identity not verified (attempt %d)", record.call_id, attempts)
            return StepOutcome(
                TurnResponse(
                    message=(
                        "I'm sorry, but I couldn't verify your identity with the information "
                        "provided. For your security, I cannot access your information. "
                        "Would you like me to transfer you to our front desk?"
                    ),
                    next_step=ConversationStep.VERIFICATION_FAILED,
                    options=YES_NO,
                    requires_transfer=True,
                    attempts_remaining=result.attempts_remaining,
                    error=result.error,
                ),
                RecordUpdate(
                    step=ConversationStep.VERIFICATION_FAILED,
                    verification_attempts=attempts,
                ),
            )

        client = result.client_info
        response, changes = await self._begin_flow(
            record.intent or Intent.SCHEDULE,
            client,
            lead=f"Thank you, {client.name}. I've verified your identity.",
        )
        response.client_info = client
        return StepOutcome(response, RecordUpdate(
            client_verified=True,
            client_info=client,
            verification_attempts=attempts,
            **changes,
        ))

    async def verification_failed(self, record: ConversationRecord, text: str) -> StepOutcome:
        answer = extract_confirmation(text)
        if answer == Confirmation.YES:
            return StepOutcome(TurnResponse(
                message="Of course. Please hold while I transfer you to our front desk.",
                next_step=ConversationStep.VERIFICATION_FAILED,
                requires_transfer=True,
            ))

        if answer == Confirmation.NO:
            remaining = self.config.verification_max_attempts - record.verification_attempts
            if remaining > 0:
                return StepOutcome(
                    TurnResponse(
                        message=(
                            "No problem, let's try again. Please tell me your phone number "
                            "and date of birth."
                        ),
                        next_step=ConversationStep.VERIFICATION,
                        requires_verification=True,
                        attempts_remaining=remaining,
                    ),
                    RecordUpdate(step=ConversationStep.VERIFICATION),
                )
            return StepOutcome(TurnResponse(
                message=(
                    "I'm sorry, I'm not able to verify your identity over the phone. "
                    "Let me transfer you to our front desk for assistance."
                ),
                next_step=ConversationStep.VERIFICATION_FAILED,
                requires_transfer=True,
                attempts_remaining=0,
            ))

        return StepOutcome(TurnResponse(
            message="Would you like me to transfer you to our front desk?",
            next_step=ConversationStep.VERIFICATION_FAILED,
            options=YES_NO,
            requires_transfer=True,
        ))

    async def _begin_flow(
        self, intent: Intent, client: ClientInfo, lead: str
    ) -> tuple[TurnResponse, dict[str, Any]]:
        """Prompt for the first step of a verified caller's request.

        Returns the response and the RecordUpdate fields that move the
        record there.
        """
        if intent in (Intent.RESCHEDULE, Intent.CANCEL):
            return await self._list_appointments(intent, client, lead)

        response = self._appointment_type_prompt(
            f"{lead} What type of appointment would you like to schedule?"
        )
        return response, {
            "step": ConversationStep.APPOINTMENT_TYPE,
            "intent": Intent.SCHEDULE,
            "appointment_type": None,
            "target_appointment": None,
            "self_pay_offered": False,
        }

    async def _list_appointments(
        self, intent: Intent, client: ClientInfo, lead: str
    ) -> tuple[TurnResponse, dict[str, Any]]:
        upcoming = await self.appointments.upcoming(client.id)
        step = (
            ConversationStep.RESCHEDULING if intent == Intent.RESCHEDULE
            else ConversationStep.CANCELLATION
        )
        verb = "reschedule" if intent == Intent.RESCHEDULE else "cancel"
        changes: dict[str, Any] = {
            "step": step,
            "intent": intent,
            "upcoming_appointments": upcoming,
            "target_appointment": None,
        }

        if not upcoming:
            message = (
                f"{lead} I don't see any upcoming appointments for you. "
                "Would you like to schedule a new one?"
            )
            options = YES_NO
        elif len(upcoming) == 1:
            message = (
                f"{lead} I see your {upcoming[0].describe()}. "
                f"Would you like to {verb} this appointment?"
            )
            options = YES_NO
            if intent == Intent.CANCEL:
                changes["target_appointment"] = upcoming[0]
        else:
            message = (
                f"{lead} You have {len(upcoming)} upcoming appointments. "
                f"Which one would you like to {verb}?"
            )
            options = [a.describe() for a in upcoming[:OPTION_LIMIT]]

        return TurnResponse(
            message=message,
            next_step=step,
            options=options,
            appointments=upcoming,
        ), changes

    # ── Booking details ─────────────────────────────────────────

    async def appointment_type(self, record: ConversationRecord, text: str) -> StepOutcome:
        appointment_type = extract_appointment_type(text)
        if appointment_type is None:
            return StepOutcome(self._appointment_type_prompt(
                "I didn't catch that. What type of appointment would you like?"
            ))

        response = self._provider_prompt(
            f"Great! You've selected a {APPOINTMENT_LABELS[appointment_type].lower()}. "
            "Which provider would you prefer?",
            appointment_type,
        )
        return StepOutcome(response, RecordUpdate(
            step=ConversationStep.PROVIDER_SELECTION,
            appointment_type=appointment_type,
        ))

    async def provider_selection(self, record: ConversationRecord, text: str) -> StepOutcome:
        providers = self.directory.providers_for(record.appointment_type)
        provider = extract_provider(text, providers)
        if provider is None:
            names = ", ".join(p.name for p in providers)
            return StepOutcome(self._provider_prompt(
                f"I didn't catch that. Which provider would you prefer? You can choose {names}.",
                record.appointment_type,
            ))

        response = self._date_prompt(
            f"Perfect! You've selected {provider.name}. What date would work best for you?",
            provider,
        )
        if not response.available_dates:
            return StepOutcome(self._provider_prompt(
                f"I'm sorry, {provider.name} has no openings in the next "
                f"{self.config.booking_horizon_days} days. "
                "Which other provider would you like?",
                record.appointment_type,
            ))
        return StepOutcome(response, RecordUpdate(
            step=ConversationStep.DATE_SELECTION,
            preferred_provider=provider,
        ))

    async def date_selection(self, record: ConversationRecord, text: str) -> StepOutcome:
        provider = record.preferred_provider
        if provider is None:
            return StepOutcome(
                self._provider_prompt("Which provider would you prefer?", record.appointment_type),
                RecordUpdate(step=ConversationStep.PROVIDER_SELECTION),
            )

        selected = extract_date(text)
        if selected is None:
            return StepOutcome(self._date_prompt(
                "I didn't catch that date. What date would work best for you?", provider,
            ))

        if not self.directory.works_on(provider, selected):
            return StepOutcome(self._date_prompt(
                f"I'm sorry, {provider.name} isn't available on {selected}. "
                "Here are the next available dates.",
                provider,
            ))

        slots = await self.availability.get(provider.id, selected)
        if not slots:
            return StepOutcome(self._date_prompt(
                f"I'm sorry, {provider.name} has no open times on {selected}. "
                "Could you choose another date?",
                provider,
            ))

        return StepOutcome(
            TurnResponse(
                message=f"Great! You've selected {selected}. What time would work best for you?",
                next_step=ConversationStep.TIME_SELECTION,
                options=slots[:OPTION_LIMIT],
                available_times=slots,
                date=selected,
            ),
            RecordUpdate(
                step=ConversationStep.TIME_SELECTION,
                preferred_date=selected,
                available_slots=slots,
            ),
        )

    async def time_selection(self, record: ConversationRecord, text: str) -> StepOutcome:
        provider, selected_date = record.preferred_provider, record.preferred_date
        if provider is None or selected_date is None or record.appointment_type is None:
            return StepOutcome(
                self._appointment_type_prompt("Let's start with the type of appointment."),
                RecordUpdate(step=ConversationStep.APPOINTMENT_TYPE, appointment_type=None),
            )

        selected = extract_time(text)
        slots = await self.availability.get(provider.id, selected_date)
        if selected is None:
            return StepOutcome(
                TurnResponse(
                    message="I didn't catch that time. What time would work best for you?",
                    next_step=ConversationStep.TIME_SELECTION,
                    options=slots[:OPTION_LIMIT],
                    available_times=slots,
                    date=selected_date,
                ),
                RecordUpdate(available_slots=slots),
            )

        afternoon = _afternoon(selected)
        if selected not in slots and afternoon in slots and not states_meridiem(text):
            spoken = f"{int(selected[:2])}:{selected[3:]}"
            return StepOutcome(
                TurnResponse(
                    message=f"Did you mean {spoken} pm? Please say the time with am or pm.",
                    next_step=ConversationStep.TIME_SELECTION,
                    options=slots[:OPTION_LIMIT],
                    available_times=slots,
                    date=selected_date,
                ),
                RecordUpdate(available_slots=slots),
            )

        if selected not in slots:
            log.info("Call %s: %s %s %s not available", record.call_id,
                     provider.id, selected_date, selected)
            return StepOutcome(
                TurnResponse(
                    message="I'm sorry, that time slot is no longer available. Here are the available times.",
                    next_step=ConversationStep.TIME_SELECTION,
                    options=slots[:OPTION_LIMIT],
                    available_times=slots,
                    date=selected_date,
                ),
                RecordUpdate(available_slots=slots),
            )

        slot = SelectedSlot(
            provider_id=provider.id,
            provider_name=provider.name,
            date=selected_date,
            time=selected,
            appointment_type=record.appointment_type,
        )
        changes: dict[str, Any] = {
            "preferred_time": selected,
            "selected_slot": slot,
            "available_slots": slots,
        }

        if record.is_rescheduling:
            response = self._confirmation_prompt(
                f"Perfect! I'll move your appointment to {selected} on {selected_date}.",
                record, slot,
            )
            return StepOutcome(response, RecordUpdate(step=ConversationStep.CONFIRMATION, **changes))

        on_file = record.insurance_info
        if on_file is not None and (on_file.verified or on_file.self_pay):
            lead = (
                "Perfect! We'll keep this as a self-pay visit." if on_file.self_pay
                else f"Perfect! I'll use your {on_file.provider.title()} insurance on file."
            )
            response = self._confirmation_prompt(lead, record, slot, insurance_info=on_file)
            return StepOutcome(response, RecordUpdate(
                step=ConversationStep.CONFIRMATION,
                insurance_verified=on_file.verified,
                **changes,
            ))

        response = self._insurance_prompt(
            f"Perfect! You've selected {selected} on {selected_date}. Now I need to verify "
            "your insurance information. What insurance provider do you have?"
        )
        response.selected_slot = slot
        return StepOutcome(response, RecordUpdate(
            step=ConversationStep.INSURANCE_VERIFICATION,
            **changes,
        ))

    # ── Insurance ───────────────────────────────────────────────

    async def insurance_verification(self, record: ConversationRecord, text: str) -> StepOutcome:
        slot = record.selected_slot
        if slot is None:
            return StepOutcome(
                self._appointment_type_prompt("Let's start with the type of appointment."),
                RecordUpdate(step=ConversationStep.APPOINTMENT_TYPE, appointment_type=None),
            )

        answer = extract_confirmation(text)
        if wants_self_pay(text) or (record.self_pay_offered and answer == Confirmation.YES):
            info = InsuranceInfo(provider=SELF_PAY_PROVIDER, self_pay=True)
            get_audit_trail(record.call_id).emit("insurance_check", record.step.value, {
                "provider": SELF_PAY_PROVIDER,
                "verified": False,
                "self_pay": True,
            })
            response = self._confirmation_prompt(
                "No problem, we'll book this as a self-pay visit.", record, slot,
                insurance_info=info,
            )
            return StepOutcome(response, RecordUpdate(
                step=ConversationStep.CONFIRMATION,
                insurance_info=info,
                insurance_verified=False,
            ))

        match = extract_insurance(text, self.directory.accepted_insurers)
        if match is None:
            if record.self_pay_offered and answer == Confirmation.NO:
                return StepOutcome(self._insurance_prompt(
                    "Okay. If you have another insurance provider, please tell me which one."
                ))
            return StepOutcome(self._insurance_prompt("What insurance provider do you have?"))

        if not match.accepted:
            response = self._insurance_prompt(
                f"I'm sorry, but we don't accept {match.name.title()}."
            )
            response.message += " Would you like to proceed with self-pay?"
            response.self_pay_option = True
            return StepOutcome(response, RecordUpdate(self_pay_offered=True))

        client = record.client_info
        member_fields = {
            "client_id": client.id if client else None,
            "name": client.name if client else "",
            "date_of_birth": client.date_of_birth if client else "",
            "member_id": client.member_id if client else None,
        }
        result = await self.insurance.verify(match.name, member_fields)
        get_audit_trail(record.call_id).emit("insurance_check", record.step.value, {
            "provider": match.name,
            "verified": result.verified,
            "member_id": member_fields["member_id"],
        })

        if not result.verified:
            return StepOutcome(
                TurnResponse(
                    message=(
                        f"I'm having trouble verifying your {match.name.title()} insurance. "
                        "Would you like to proceed with self-pay, or would you prefer to call back later?"
                    ),
                    next_step=ConversationStep.INSURANCE_VERIFICATION,
                    options=["Self-pay", "Call back later"],
                    self_pay_option=True,
                    error=result.error,
                ),
                RecordUpdate(self_pay_offered=True),
            )

        info = InsuranceInfo(
            provider=match.name,
            verified=True,
            copay=result.copay,
            deductible=result.deductible,
            deductible_met=result.deductible_met,
        )
        lead = f"Great! I've verified your {match.name.title()} insurance."
        if result.copay is not None:
            lead += f" Your copay will be {_money(result.copay)}."
        response = self._confirmation_prompt(lead, record, slot, insurance_info=info)
        return StepOutcome(response, RecordUpdate(
            step=ConversationStep.CONFIRMATION,
            insurance_verified=True,
            insurance_info=info,
        ))

    # ── Confirmation and changes ────────────────────────────────

    async def confirmation(self, record: ConversationRecord, text: str) -> StepOutcome:
        answer = extract_confirmation(text)
        if answer == Confirmation.NO:
            return StepOutcome(
                TurnResponse(
                    message=(
                        "No problem! What would you like to change: the appointment type, "
                        "provider, date, or time?"
                    ),
                    next_step=ConversationStep.MODIFICATION,
                    options=CHANGE_OPTIONS,
                ),
                RecordUpdate(step=ConversationStep.MODIFICATION),
            )
        if answer is None:
            return StepOutcome(TurnResponse(
                message="I didn't catch that. Is the appointment information correct?",
                next_step=ConversationStep.CONFIRMATION,
                options=YES_NO,
            ))

        slot, client = record.selected_slot, record.client_info
        if slot is None or client is None:
            return StepOutcome(
                self._appointment_type_prompt("Let's start with the type of appointment."),
                RecordUpdate(step=ConversationStep.APPOINTMENT_TYPE, appointment_type=None),
            )

        insurance = record.insurance_info
        request = AppointmentRequest(
            client_id=client.id,
            provider_id=slot.provider_id,
            appointment_type=slot.appointment_type,
            date=slot.date,
            time=slot.time,
            duration_minutes=self.directory.duration_for(slot.appointment_type),
            insurance_verified=record.insurance_verified,
            insurance_provider=insurance.provider if insurance and not insurance.self_pay else None,
            copay=insurance.copay if insurance else None,
            self_pay=bool(insurance and insurance.self_pay),
        )

        trail = get_audit_trail(record.call_id)
        target = record.target_appointment if record.is_rescheduling else None
        if target is not None:
            result = await self.appointments.reschedule(target.id, request)
            event = "appointment_rescheduled"
        else:
            result = await self.appointments.create(request)
            event = "appointment_created"

        if not result.success or not result.appointment_id:
            trail.emit("appointment_failed", record.step.value, {
                "provider_id": slot.provider_id,
                "date": slot.date,
                "time": slot.time,
                "error": result.error,
            })
            return StepOutcome(TurnResponse(
                message=(
                    "I'm sorry, there was an issue scheduling your appointment. Let me try again "
                    "or would you prefer to speak with our front desk?"
                ),
                next_step=ConversationStep.CONFIRMATION,
                options=YES_NO,
                error=result.error or "Appointment could not be created",
            ))

        self.availability.invalidate(slot.provider_id, slot.date)
        if target is not None:
            self.availability.invalidate(target.provider_id, target.date)
        trail.emit(event, record.step.value, {
            "appointment_id": result.appointment_id,
            "provider_id": slot.provider_id,
            "date": slot.date,
            "time": slot.time,
            "self_pay": request.self_pay,
        })

        verb = "rescheduled" if target is not None else "scheduled"
        return StepOutcome(
            TurnResponse(
                message=(
                    f"Perfect! Your appointment has been {verb}. You'll receive a confirmation "
                    "email and text message. Is there anything else I can help you with?"
                ),
                next_step=ConversationStep.COMPLETED,
                appointment_id=result.appointment_id,
                appointment_details=self._slot_details(record, slot),
                confirmation_sent=True,
            ),
            RecordUpdate(
                step=ConversationStep.COMPLETED,
                appointment_id=result.appointment_id,
                target_appointment=None,
            ),
        )

    async def modification(self, record: ConversationRecord, text: str) -> StepOutcome:
        target = extract_change_target(text)
        if target is None:
            return StepOutcome(TurnResponse(
                message=(
                    "What would you like to change: the appointment type, provider, date, or time?"
                ),
                next_step=ConversationStep.MODIFICATION,
                options=CHANGE_OPTIONS,
            ))

        if record.is_rescheduling and target in (ChangeTarget.APPOINTMENT_TYPE, ChangeTarget.PROVIDER):
            return StepOutcome(TurnResponse(
                message=(
                    "When rescheduling I can change the date or the time of your appointment. "
                    "Which would you like to change?"
                ),
                next_step=ConversationStep.MODIFICATION,
                options=["Date", "Time"],
            ))

        if target == ChangeTarget.APPOINTMENT_TYPE:
            return StepOutcome(
                self._appointment_type_prompt("Sure. What type of appointment would you like?"),
                RecordUpdate(step=ConversationStep.APPOINTMENT_TYPE, appointment_type=None),
            )

        if target == ChangeTarget.PROVIDER or record.preferred_provider is None:
            return StepOutcome(
                self._provider_prompt("Sure. Which provider would you prefer?", record.appointment_type),
                RecordUpdate(step=ConversationStep.PROVIDER_SELECTION, preferred_provider=None),
            )

        provider = record.preferred_provider
        if target == ChangeTarget.DATE or record.preferred_date is None:
            return StepOutcome(
                self._date_prompt("Sure. What date would work better for you?", provider),
                RecordUpdate(step=ConversationStep.DATE_SELECTION, preferred_date=None),
            )

        slots = await self.availability.get(provider.id, record.preferred_date)
        return StepOutcome(
            TurnResponse(
                message=f"Sure. What time would work better for you on {record.preferred_date}?",
                next_step=ConversationStep.TIME_SELECTION,
                options=slots[:OPTION_LIMIT],
                available_times=slots,
                date=record.preferred_date,
            ),
            RecordUpdate(
                step=ConversationStep.TIME_SELECTION,
                preferred_time=None,
                available_slots=slots,
            ),
        )

    # ── Reschedule and cancel ───────────────────────────────────

    def _choose_appointment(
        self, record: ConversationRecord, text: str
    ) -> Optional[ExistingAppointment]:
        upcoming = record.upcoming_appointments
        index = extract_choice(text, len(upcoming))
        if index is None and len(upcoming) == 1 and extract_confirmation(text) == Confirmation.YES:
            index = 0
        if index is None:
            for i, appointment in enumerate(upcoming):
                if appointment.date in text or (
                    appointment.provider_name and appointment.provider_name.lower() in text.lower()
                ):
                    index = i
                    break
        return upcoming[index] if index is not None else None

    def _nothing_to_change(self, record: ConversationRecord, text: str) -> Optional[StepOutcome]:
        """Shared yes/no handling when the caller has no upcoming appointments."""
        if record.upcoming_appointments:
            return None
        answer = extract_confirmation(text)
        if answer == Confirmation.YES:
            response = self._appointment_type_prompt(
                "Great! What type of appointment would you like to schedule?"
            )
            return StepOutcome(response, RecordUpdate(
                step=ConversationStep.APPOINTMENT_TYPE,
                intent=Intent.SCHEDULE,
                appointment_type=None,
            ))
        if answer == Confirmation.NO:
            return self._anything_else("No problem.")
        return StepOutcome(TurnResponse(
            message="I don't see any upcoming appointments. Would you like to schedule a new one?",
            next_step=record.step,
            options=YES_NO,
        ))

    def _anything_else(self, lead: str) -> StepOutcome:
        return StepOutcome(
            TurnResponse(
                message=f"{lead} Is there anything else I can help you with?",
                next_step=ConversationStep.COMPLETED,
            ),
            RecordUpdate(step=ConversationStep.COMPLETED, target_appointment=None),
        )

    async def rescheduling(self, record: ConversationRecord, text: str) -> StepOutcome:
        outcome = self._nothing_to_change(record, text)
        if outcome is not None:
            return outcome

        chosen = self._choose_appointment(record, text)
        if chosen is None:
            if extract_confirmation(text) == Confirmation.NO:
                return self._anything_else("Okay, I'll leave your appointment as it is.")
            return StepOutcome(TurnResponse(
                message="Which appointment would you like to reschedule?",
                next_step=ConversationStep.RESCHEDULING,
                options=[a.describe() for a in record.upcoming_appointments[:OPTION_LIMIT]],
                appointments=record.upcoming_appointments,
            ))

        provider = self.directory.provider(chosen.provider_id)
        if provider is None:
            log.warning("Call %s: appointment %s has unknown provider %s",
                        record.call_id, chosen.id, chosen.provider_id)
            return StepOutcome(
                self._provider_prompt(
                    "Which provider would you like to see for your new appointment time?",
                    chosen.appointment_type,
                ),
                RecordUpdate(
                    step=ConversationStep.PROVIDER_SELECTION,
                    target_appointment=chosen,
                    appointment_type=chosen.appointment_type,
                ),
            )

        response = self._date_prompt(
            f"Let's find a new time for your {chosen.describe()}. What date would work best for you?",
            provider,
        )
        return StepOutcome(response, RecordUpdate(
            step=ConversationStep.DATE_SELECTION,
            target_appointment=chosen,
            appointment_type=chosen.appointment_type,
            preferred_provider=provider,
        ))

    async def cancellation(self, record: ConversationRecord, text: str) -> StepOutcome:
        outcome = self._nothing_to_change(record, text)
        if outcome is not None:
            return outcome

        target = record.target_appointment
        if target is None:
            chosen = self._choose_appointment(record, text)
            if chosen is None:
                if extract_confirmation(text) == Confirmation.NO:
                    return self._anything_else("Okay, I won't cancel anything.")
                return StepOutcome(TurnResponse(
                    message="Which appointment would you like to cancel?",
                    next_step=ConversationStep.CANCELLATION,
                    options=[a.describe() for a in record.upcoming_appointments[:OPTION_LIMIT]],
                    appointments=record.upcoming_appointments,
                ))
            return StepOutcome(
                TurnResponse(
                    message=f"Just to confirm, you'd like to cancel your {chosen.describe()}?",
                    next_step=ConversationStep.CANCELLATION,
                    options=YES_NO,
                ),
                RecordUpdate(target_appointment=chosen),
            )

        answer = extract_confirmation(text)
        if answer == Confirmation.NO:
            return self._anything_else("Okay, I've kept your appointment.")
        if answer is None:
            return StepOutcome(TurnResponse(
                message=f"Would you like to cancel your {target.describe()}?",
                next_step=ConversationStep.CANCELLATION,
                options=YES_NO,
            ))

        result = await self.appointments.cancel(target.id, reason="Cancelled by caller")
        trail = get_audit_trail(record.call_id)
        if not result.success:
            trail.emit("appointment_failed", record.step.value, {
                "appointment_id": target.id,
                "error": result.error,
            })
            return StepOutcome(TurnResponse(
                message=(
                    "I'm sorry, I wasn't able to cancel that appointment. "
                    "Would you like me to transfer you to our front desk?"
                ),
                next_step=ConversationStep.CANCELLATION,
                options=YES_NO,
                error=result.error or "Appointment could not be cancelled",
            ))

        self.availability.invalidate(target.provider_id, target.date)
        trail.emit("appointment_cancelled", record.step.value, {
            "appointment_id": target.id,
            "provider_id": target.provider_id,
            "date": target.date,
        })
        remaining = [a for a in record.upcoming_appointments if a.id != target.id]
        return StepOutcome(
            TurnResponse(
                message=(
                    f"Your {target.describe()} has been cancelled. "
                    "Is there anything else I can help you with?"
                ),
                next_step=ConversationStep.COMPLETED,
                appointment_id=target.id,
            ),
            RecordUpdate(
                step=ConversationStep.COMPLETED,
                appointment_id=target.id,
                target_appointment=None,
                upcoming_appointments=remaining,
            ),
        )

    # ── Wrap-up ─────────────────────────────────────────────────

    async def completed(self, record: ConversationRecord, text: str) -> StepOutcome:
        intent = extract_intent(text)
        if intent != Intent.GENERAL and record.client_verified and record.client_info:
            response, changes = await self._begin_flow(intent, record.client_info, lead="Sure!")
            return StepOutcome(response, RecordUpdate(**changes))

        if extract_confirmation(text) == Confirmation.YES:
            return StepOutcome(TurnResponse(
                message="What else can I help you with? I can schedule, reschedule, or cancel an appointment.",
                next_step=ConversationStep.COMPLETED,
                options=MENU_OPTIONS,
            ))

        return StepOutcome(TurnResponse(
            message=f"Thank you for calling {self.config.practice_name}. Have a great day!",
            next_step=ConversationStep.COMPLETED,
        ))

    async def general_inquiry(self, record: ConversationRecord, text: str) -> StepOutcome:
        return StepOutcome(
            TurnResponse(
                message=(
                    "I'm here to help with appointment scheduling. Would you like to schedule, "
                    "reschedule, or cancel an appointment?"
                ),
                next_step=ConversationStep.GREETING,
                options=MENU_OPTIONS,
            ),
            RecordUpdate(step=ConversationStep.GREETING),
        )
