"""End-to-end conversation tests through DialogueDriver with the demo services."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from clinic_scheduling.audit import get_audit_trail
from clinic_scheduling.config import Settings
from clinic_scheduling.directory import DomainDirectory
from clinic_scheduling.driver import TRANSFER_MESSAGE, DialogueDriver, build_driver
from clinic_scheduling.errors import CollaboratorError, DuplicateCallError, ErrorKind
from clinic_scheduling.models.conversation import (
    AppointmentType,
    ClientInfo,
    ConversationStep,
    ExistingAppointment,
)
from clinic_scheduling.models.verification import IdentityResult, InsuranceResult
from clinic_scheduling.services.availability import TTLAvailabilityCache
from clinic_scheduling.services.base import IdentityVerifier
from clinic_scheduling.services.demo import (
    DemoClientDirectory,
    DemoInsuranceVerifier,
    InMemoryAppointmentBackend,
)
from clinic_scheduling.services.verification import VerificationService

JOHN_IDENTITY = "My phone is 904-123-4567 and my date of birth is 03/15/1985"
WRONG_IDENTITY = "My phone is 904-123-4567 and my date of birth is 01/01/2000"


def make_driver():
    config = Settings(_env_file=None)
    directory = DomainDirectory(config)
    backend = InMemoryAppointmentBackend(directory)
    driver = DialogueDriver(
        directory=directory,
        identity=VerificationService(
            DemoClientDirectory().find_client, max_attempts=3, lockout_seconds=900,
        ),
        insurance=DemoInsuranceVerifier(directory),
        appointments=backend,
        availability=TTLAvailabilityCache(backend, ttl_seconds=300),
        config=config,
    )
    return driver, directory, backend


async def talk_to_insurance(driver, call_id):
    """Greeting → time selected for a Dr. Soto follow-up. Six turns."""
    driver.start_call(call_id)
    await driver.process_message(call_id, "I want to schedule an appointment")
    await driver.process_message(call_id, JOHN_IDENTITY)
    await driver.process_message(call_id, "I need a follow-up")
    response = await driver.process_message(call_id, "Dr. Soto please")
    day = response.available_dates[0]
    await driver.process_message(call_id, f"How about {day}?")
    response = await driver.process_message(call_id, "4:00 pm")
    assert response.next_step == ConversationStep.INSURANCE_VERIFICATION
    return day


def seed_appointment(directory, backend):
    charles = directory.provider("charles_maddix")
    dates = directory.available_dates(charles)
    backend.add_existing("client_001", ExistingAppointment(
        id="apt_existing",
        provider_id="charles_maddix",
        provider_name="Charles Maddix",
        appointment_type=AppointmentType.FOLLOW_UP,
        date=dates[0],
        time="10:30",
    ))
    return dates


class TestStartCall:
    def test_new_call_starts_at_greeting(self):
        driver, _, _ = make_driver()
        response = driver.start_call("CA-start")
        record = driver.store.get("CA-start")
        assert record.step == ConversationStep.GREETING
        assert record.conversation_history == []
        assert response.next_step == ConversationStep.GREETING
        assert "Matt" in response.message

    def test_duplicate_start(self):
        driver, _, _ = make_driver()
        driver.start_call("CA-dup")
        with pytest.raises(DuplicateCallError):
            driver.start_call("CA-dup")

    def test_build_driver_defaults_to_demo_services(self):
        driver = build_driver(Settings(_env_file=None))
        assert isinstance(driver.handlers.appointments, InMemoryAppointmentBackend)
        assert isinstance(driver.handlers.insurance, DemoInsuranceVerifier)


class TestGreeting:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", [
        "I want to schedule an appointment",
        "I need to move my visit",
        "Please cancel",
    ])
    async def test_actionable_intent_requires_verification(self, text):
        driver, _, _ = make_driver()
        driver.start_call("CA-greet")
        response = await driver.process_message("CA-greet", text)
        assert response.next_step == ConversationStep.VERIFICATION
        assert response.requires_verification is True
        assert "verify your identity" in response.message
        assert driver.store.get("CA-greet").step == ConversationStep.VERIFICATION

    @pytest.mark.asyncio
    async def test_general_inquiry_stays(self):
        driver, _, _ = make_driver()
        driver.start_call("CA-general")
        response = await driver.process_message("CA-general", "What are your hours?")
        assert response.next_step == ConversationStep.GREETING
        assert len(response.options) == 3
        assert driver.store.get("CA-general").step == ConversationStep.GREETING


class TestSchedulingFlow:
    @pytest.mark.asyncio
    async def test_happy_path(self):
        driver, _, backend = make_driver()
        call_id = "CA-happy"
        day = await talk_to_insurance(driver, call_id)

        response = await driver.process_message(call_id, "I have Blue Cross Blue Shield")
        assert response.next_step == ConversationStep.CONFIRMATION
        assert "$25" in response.message
        assert driver.store.get(call_id).insurance_verified is True

        response = await driver.process_message(call_id, "yes")
        assert response.next_step == ConversationStep.COMPLETED
        assert response.appointment_id.startswith("apt_")
        assert response.confirmation_sent is True

        record = driver.store.get(call_id)
        assert record.step == ConversationStep.COMPLETED
        assert record.appointment_id == response.appointment_id

        # Booked slot is no longer offered
        slots = await driver.handlers.availability.get("dr_soto", day)
        assert "16:00" not in slots

        upcoming = await backend.upcoming("client_001")
        assert [(a.date, a.time) for a in upcoming] == [(day, "16:00")]

    @pytest.mark.asyncio
    async def test_history_has_two_entries_per_turn(self):
        driver, _, _ = make_driver()
        call_id = "CA-history"
        await talk_to_insurance(driver, call_id)
        await driver.process_message(call_id, "Aetna")
        await driver.process_message(call_id, "yes")

        history = driver.store.get(call_id).conversation_history
        assert len(history) == 16
        assert [e.role for e in history] == ["user", "agent"] * 8
        assert history[0].content == "I want to schedule an appointment"
        assert history[-2].content == "yes"

    @pytest.mark.asyncio
    async def test_follow_up_offers_follow_up_only_provider(self):
        driver, _, _ = make_driver()
        driver.start_call("CA-fu")
        await driver.process_message("CA-fu", "book please")
        await driver.process_message("CA-fu", JOHN_IDENTITY)
        response = await driver.process_message("CA-fu", "I need a follow-up")

        assert response.next_step == ConversationStep.PROVIDER_SELECTION
        assert "Dr. Soto" in [p.name for p in response.providers]
        assert driver.store.get("CA-fu").appointment_type == AppointmentType.FOLLOW_UP

    @pytest.mark.asyncio
    async def test_unparsed_input_reprompts(self):
        driver, _, _ = make_driver()
        driver.start_call("CA-reprompt")
        await driver.process_message("CA-reprompt", "book please")
        await driver.process_message("CA-reprompt", JOHN_IDENTITY)
        response = await driver.process_message("CA-reprompt", "umm, not sure")

        assert response.next_step == ConversationStep.APPOINTMENT_TYPE
        assert len(response.options) == 3
        assert driver.store.get("CA-reprompt").step == ConversationStep.APPOINTMENT_TYPE

    @pytest.mark.asyncio
    async def test_day_provider_does_not_work(self):
        driver, directory, _ = make_driver()
        driver.start_call("CA-dayoff")
        await driver.process_message("CA-dayoff", "book please")
        await driver.process_message("CA-dayoff", JOHN_IDENTITY)
        await driver.process_message("CA-dayoff", "comprehensive evaluation")
        await driver.process_message("CA-dayoff", "Ava Suleiman")

        ava = directory.provider("ava_suleiman")
        tuesday = directory.available_dates(ava)[0]
        wednesday = (datetime.fromisoformat(tuesday) + timedelta(days=1)).date().isoformat()
        response = await driver.process_message("CA-dayoff", wednesday)
        assert response.next_step == ConversationStep.DATE_SELECTION
        assert "isn't available" in response.message

    @pytest.mark.asyncio
    async def test_taken_time_reoffers_slots(self):
        driver, _, _ = make_driver()
        call_id = "CA-taken"
        driver.start_call(call_id)
        await driver.process_message(call_id, "book please")
        await driver.process_message(call_id, JOHN_IDENTITY)
        await driver.process_message(call_id, "follow up")
        response = await driver.process_message(call_id, "Dr. Soto")
        await driver.process_message(call_id, response.available_dates[0])

        response = await driver.process_message(call_id, "9:00 am")
        assert response.next_step == ConversationStep.TIME_SELECTION
        assert "no longer available" in response.message
        assert response.options[0] == "16:00"


class TestInsurance:
    @pytest.mark.asyncio
    async def test_unaccepted_insurer_offers_self_pay(self):
        driver, _, backend = make_driver()
        call_id = "CA-humana"
        await talk_to_insurance(driver, call_id)

        response = await driver.process_message(call_id, "I have Humana")
        assert response.next_step == ConversationStep.INSURANCE_VERIFICATION
        assert response.self_pay_option is True
        assert "self-pay" in response.message
        assert driver.store.get(call_id).step == ConversationStep.INSURANCE_VERIFICATION

        response = await driver.process_message(call_id, "yes")
        assert response.next_step == ConversationStep.CONFIRMATION
        record = driver.store.get(call_id)
        assert record.insurance_info.self_pay is True
        assert record.insurance_verified is False

        response = await driver.process_message(call_id, "yes")
        assert response.next_step == ConversationStep.COMPLETED
        assert len(await backend.upcoming("client_001")) == 1

    @pytest.mark.asyncio
    async def test_unrecognized_insurer_reprompts(self):
        driver, _, _ = make_driver()
        call_id = "CA-unknown-ins"
        await talk_to_insurance(driver, call_id)
        response = await driver.process_message(call_id, "the one from my job")
        assert response.next_step == ConversationStep.INSURANCE_VERIFICATION
        assert "Aetna" in response.options
        assert not driver.store.get(call_id).self_pay_offered

    @pytest.mark.asyncio
    async def test_failed_eligibility_offers_self_pay(self):
        driver, _, _ = make_driver()
        call_id = "CA-inactive"
        await talk_to_insurance(driver, call_id)
        driver.handlers.insurance = MagicMock()
        driver.handlers.insurance.verify = AsyncMock(
            return_value=InsuranceResult(verified=False, error="Coverage is not active"),
        )

        response = await driver.process_message(call_id, "Cigna")
        assert response.next_step == ConversationStep.INSURANCE_VERIFICATION
        assert response.self_pay_option is True
        assert response.error == "Coverage is not active"

        response = await driver.process_message(call_id, "I'll just do self pay")
        assert response.next_step == ConversationStep.CONFIRMATION


class TestVerification:
    @pytest.mark.asyncio
    async def test_missing_field_reprompts(self):
        driver, _, _ = make_driver()
        driver.start_call("CA-missing")
        await driver.process_message("CA-missing", "book please")
        response = await driver.process_message("CA-missing", "my phone is 904-123-4567")
        assert response.next_step == ConversationStep.VERIFICATION
        assert "both" in response.message

    @pytest.mark.asyncio
    async def test_failure_then_retry(self):
        driver, _, _ = make_driver()
        driver.start_call("CA-retry")
        await driver.process_message("CA-retry", "book please")

        response = await driver.process_message("CA-retry", WRONG_IDENTITY)
        assert response.next_step == ConversationStep.VERIFICATION_FAILED
        assert response.requires_transfer is True
        assert driver.store.get("CA-retry").client_verified is False

        response = await driver.process_message("CA-retry", "no")
        assert response.next_step == ConversationStep.VERIFICATION

        response = await driver.process_message("CA-retry", JOHN_IDENTITY)
        assert response.next_step == ConversationStep.APPOINTMENT_TYPE
        assert response.client_info.name == "John Doe"

    @pytest.mark.asyncio
    async def test_accepting_transfer(self):
        driver, _, _ = make_driver()
        driver.start_call("CA-transfer")
        await driver.process_message("CA-transfer", "book please")
        await driver.process_message("CA-transfer", WRONG_IDENTITY)
        response = await driver.process_message("CA-transfer", "yes please")
        assert response.requires_transfer is True
        assert response.next_step == ConversationStep.VERIFICATION_FAILED

    @pytest.mark.asyncio
    async def test_attempts_exhausted(self):
        driver, _, _ = make_driver()
        driver.start_call("CA-exhausted")
        await driver.process_message("CA-exhausted", "book please")
        for _ in range(3):
            await driver.process_message("CA-exhausted", WRONG_IDENTITY)
            response = await driver.process_message("CA-exhausted", "no")
        assert response.requires_transfer is True
        assert response.attempts_remaining == 0
        assert driver.store.get("CA-exhausted").step == ConversationStep.VERIFICATION_FAILED


class TestFailures:
    @pytest.mark.asyncio
    async def test_unknown_call(self):
        driver, _, _ = make_driver()
        response = await driver.process_message("CA-ghost", "hello")
        assert response.message == TRANSFER_MESSAGE
        assert response.requires_transfer is True
        assert response.error_kind == ErrorKind.UNKNOWN_CALL
        assert driver.store.get("CA-ghost") is None

    @pytest.mark.asyncio
    async def test_collaborator_failure_leaves_record_unchanged(self):
        driver, _, _ = make_driver()
        driver.start_call("CA-boom")
        await driver.process_message("CA-boom", "book please")
        driver.handlers.identity = MagicMock()
        driver.handlers.identity.verify = AsyncMock(side_effect=CollaboratorError("intakeq", "timeout"))

        before = driver.store.get("CA-boom")
        response = await driver.process_message("CA-boom", JOHN_IDENTITY)
        after = driver.store.get("CA-boom")

        assert response.message == TRANSFER_MESSAGE
        assert response.next_step == ConversationStep.ERROR
        assert response.requires_transfer is True
        assert response.error_kind == ErrorKind.COLLABORATOR_FAILURE

        skip = {"conversation_history", "last_activity"}
        assert after.model_dump(exclude=skip) == before.model_dump(exclude=skip)
        assert after.step == ConversationStep.VERIFICATION
        assert len(after.conversation_history) == 4

    @pytest.mark.asyncio
    async def test_availability_failure(self):
        driver, _, _ = make_driver()
        call_id = "CA-avail-down"
        driver.start_call(call_id)
        await driver.process_message(call_id, "book please")
        await driver.process_message(call_id, JOHN_IDENTITY)
        await driver.process_message(call_id, "follow up")
        response = await driver.process_message(call_id, "Dr. Soto")
        driver.handlers.availability = MagicMock()
        driver.handlers.availability.get = AsyncMock(side_effect=CollaboratorError("intakeq", "503"))

        response = await driver.process_message(call_id, response.available_dates[0])
        assert response.error_kind == ErrorKind.COLLABORATOR_FAILURE
        record = driver.store.get(call_id)
        assert record.step == ConversationStep.DATE_SELECTION
        assert record.preferred_date is None


class SlowIdentity(IdentityVerifier):
    def __init__(self):
        self.calls = 0

    async def verify(self, phone_number, date_of_birth):
        self.calls += 1
        await asyncio.sleep(0.01)
        return IdentityResult(
            verified=True,
            client_info=ClientInfo(id="client_001", name="John Doe"),
        )


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_messages_for_one_call_are_serialized(self):
        driver, _, _ = make_driver()
        identity = SlowIdentity()
        driver.handlers.identity = identity
        driver.start_call("CA-race")
        await driver.process_message("CA-race", "book please")

        first, second = await asyncio.gather(
            driver.process_message("CA-race", JOHN_IDENTITY),
            driver.process_message("CA-race", JOHN_IDENTITY),
        )

        assert first.next_step == ConversationStep.APPOINTMENT_TYPE
        assert second.next_step == ConversationStep.APPOINTMENT_TYPE
        record = driver.store.get("CA-race")
        assert identity.calls == 1
        assert record.verification_attempts == 1
        assert len(record.conversation_history) == 6

    @pytest.mark.asyncio
    async def test_calls_are_independent(self):
        driver, _, _ = make_driver()
        driver.start_call("CA-a")
        driver.start_call("CA-b")
        await asyncio.gather(
            driver.process_message("CA-a", "book please"),
            driver.process_message("CA-b", "what are your hours"),
        )
        assert driver.store.get("CA-a").step == ConversationStep.VERIFICATION
        assert driver.store.get("CA-b").step == ConversationStep.GREETING


class GatedIdentity(IdentityVerifier):
    """Holds verification open until the test releases it."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def verify(self, phone_number, date_of_birth):
        self.started.set()
        await self.release.wait()
        return IdentityResult(
            verified=True,
            client_info=ClientInfo(id="client_001", name="John Doe"),
        )


async def _turn_in_flight(driver, call_id):
    identity = GatedIdentity()
    driver.handlers.identity = identity
    driver.start_call(call_id)
    await driver.process_message(call_id, "book please")
    turn = asyncio.create_task(driver.process_message(call_id, JOHN_IDENTITY))
    await identity.started.wait()
    return identity, turn


class TestEndingDuringTurn:
    @pytest.mark.asyncio
    async def test_end_call_waits_for_turn(self):
        driver, _, _ = make_driver()
        identity, turn = await _turn_in_flight(driver, "CA-x")

        ending = asyncio.create_task(driver.end_call("CA-x"))
        await asyncio.sleep(0.01)
        assert not ending.done()
        assert "CA-x" in driver.store

        identity.release.set()
        response = await turn
        assert response.next_step == ConversationStep.APPOINTMENT_TYPE
        assert await ending is True
        assert driver.store.get("CA-x") is None

        driver.start_call("CA-x")
        record = driver.store.get("CA-x")
        assert record.step == ConversationStep.GREETING
        assert record.conversation_history == []
        assert record.client_verified is False
        await driver.end_call("CA-x")

    @pytest.mark.asyncio
    async def test_record_removed_mid_turn(self):
        driver, _, _ = make_driver()
        identity, turn = await _turn_in_flight(driver, "CA-gone")

        driver.store.remove("CA-gone")
        identity.release.set()
        response = await turn

        assert response.message == TRANSFER_MESSAGE
        assert response.error_kind == ErrorKind.UNKNOWN_CALL
        assert driver.store.get("CA-gone") is None
        assert "CA-gone" not in driver.store._locks

    @pytest.mark.asyncio
    async def test_restarted_call_keeps_its_own_record(self):
        driver, _, _ = make_driver()
        identity, turn = await _turn_in_flight(driver, "CA-y")

        driver.store.remove("CA-y")
        driver.start_call("CA-y")
        identity.release.set()
        response = await turn

        assert response.error_kind == ErrorKind.UNKNOWN_CALL
        record = driver.store.get("CA-y")
        assert record.step == ConversationStep.GREETING
        assert record.conversation_history == []
        assert record.client_verified is False
        await driver.end_call("CA-y")

    @pytest.mark.asyncio
    async def test_no_transition_event_for_ended_call(self):
        driver, _, _ = make_driver()
        identity, turn = await _turn_in_flight(driver, "CA-quiet")

        driver.store.remove("CA-quiet")
        identity.release.set()
        await turn

        from clinic_scheduling.audit import _trails
        assert "CA-quiet" not in _trails


class TestRescheduleAndCancel:
    @pytest.mark.asyncio
    async def test_reschedule(self):
        driver, directory, backend = make_driver()
        dates = seed_appointment(directory, backend)
        call_id = "CA-resched"
        driver.start_call(call_id)

        response = await driver.process_message(call_id, "I need to move my visit")
        assert response.next_step == ConversationStep.VERIFICATION

        response = await driver.process_message(call_id, JOHN_IDENTITY)
        assert response.next_step == ConversationStep.RESCHEDULING
        assert [a.id for a in response.appointments] == ["apt_existing"]

        response = await driver.process_message(call_id, "yes")
        assert response.next_step == ConversationStep.DATE_SELECTION
        record = driver.store.get(call_id)
        assert record.target_appointment.id == "apt_existing"
        assert record.preferred_provider.id == "charles_maddix"
        assert record.appointment_type == AppointmentType.FOLLOW_UP

        await driver.process_message(call_id, f"{dates[1]} please")
        response = await driver.process_message(call_id, "11:00")
        # Insurance is not asked again when moving an existing appointment
        assert response.next_step == ConversationStep.CONFIRMATION

        response = await driver.process_message(call_id, "yes")
        assert response.next_step == ConversationStep.COMPLETED
        assert response.appointment_id == "apt_existing"
        upcoming = await backend.upcoming("client_001")
        assert [(a.date, a.time) for a in upcoming] == [(dates[1], "11:00")]

    @pytest.mark.asyncio
    async def test_cancel(self):
        driver, directory, backend = make_driver()
        seed_appointment(directory, backend)
        call_id = "CA-cancel"
        driver.start_call(call_id)

        await driver.process_message(call_id, "Please cancel")
        response = await driver.process_message(call_id, JOHN_IDENTITY)
        assert response.next_step == ConversationStep.CANCELLATION
        assert "cancel" in response.message

        response = await driver.process_message(call_id, "yes")
        assert response.next_step == ConversationStep.COMPLETED
        assert response.appointment_id == "apt_existing"
        assert await backend.upcoming("client_001") == []

    @pytest.mark.asyncio
    async def test_cancel_declined_keeps_appointment(self):
        driver, directory, backend = make_driver()
        seed_appointment(directory, backend)
        call_id = "CA-keep"
        driver.start_call(call_id)
        await driver.process_message(call_id, "Please cancel")
        await driver.process_message(call_id, JOHN_IDENTITY)

        response = await driver.process_message(call_id, "no")
        assert response.next_step == ConversationStep.COMPLETED
        assert len(await backend.upcoming("client_001")) == 1

    @pytest.mark.asyncio
    async def test_reschedule_without_appointments_offers_new_booking(self):
        driver, _, _ = make_driver()
        call_id = "CA-nothing"
        driver.start_call(call_id)
        await driver.process_message(call_id, "I need to move my visit")
        response = await driver.process_message(call_id, JOHN_IDENTITY)
        assert response.next_step == ConversationStep.RESCHEDULING
        assert response.appointments == []

        response = await driver.process_message(call_id, "yes")
        assert response.next_step == ConversationStep.APPOINTMENT_TYPE


class TestModification:
    @pytest.mark.asyncio
    async def test_change_time_reuses_verified_insurance(self):
        driver, _, backend = make_driver()
        call_id = "CA-modify"
        day = await talk_to_insurance(driver, call_id)
        await driver.process_message(call_id, "Aetna")

        response = await driver.process_message(call_id, "no")
        assert response.next_step == ConversationStep.MODIFICATION

        response = await driver.process_message(call_id, "I'd like a different time")
        assert response.next_step == ConversationStep.TIME_SELECTION
        record = driver.store.get(call_id)
        assert record.selected_slot is None
        assert record.preferred_time is None
        assert record.insurance_verified is False
        assert record.insurance_info.provider == "aetna"

        response = await driver.process_message(call_id, "4:15 pm")
        assert response.next_step == ConversationStep.CONFIRMATION
        assert driver.store.get(call_id).insurance_verified is True

        await driver.process_message(call_id, "yes")
        upcoming = await backend.upcoming("client_001")
        assert [(a.date, a.time) for a in upcoming] == [(day, "16:15")]

    @pytest.mark.asyncio
    async def test_change_provider(self):
        driver, _, _ = make_driver()
        call_id = "CA-modify-provider"
        await talk_to_insurance(driver, call_id)
        await driver.process_message(call_id, "Aetna")
        await driver.process_message(call_id, "no")

        response = await driver.process_message(call_id, "a different doctor")
        assert response.next_step == ConversationStep.PROVIDER_SELECTION
        record = driver.store.get(call_id)
        assert record.preferred_provider is None
        assert record.preferred_date is None
        assert record.appointment_type == AppointmentType.FOLLOW_UP

    @pytest.mark.asyncio
    async def test_unknown_change_reprompts(self):
        driver, _, _ = make_driver()
        call_id = "CA-modify-unknown"
        await talk_to_insurance(driver, call_id)
        await driver.process_message(call_id, "Aetna")
        await driver.process_message(call_id, "no")
        response = await driver.process_message(call_id, "hmm")
        assert response.next_step == ConversationStep.MODIFICATION
        assert len(response.options) == 4


class TestCompleted:
    @pytest.mark.asyncio
    async def test_new_booking_after_completion_skips_verification(self):
        driver, _, _ = make_driver()
        call_id = "CA-again"
        await talk_to_insurance(driver, call_id)
        await driver.process_message(call_id, "Aetna")
        await driver.process_message(call_id, "yes")

        response = await driver.process_message(call_id, "I'd like to book another appointment")
        assert response.next_step == ConversationStep.APPOINTMENT_TYPE
        record = driver.store.get(call_id)
        assert record.client_verified is True
        assert record.appointment_type is None

    @pytest.mark.asyncio
    async def test_closing(self):
        driver, _, _ = make_driver()
        call_id = "CA-bye"
        await talk_to_insurance(driver, call_id)
        await driver.process_message(call_id, "Aetna")
        await driver.process_message(call_id, "yes")
        response = await driver.process_message(call_id, "no thanks")
        assert response.next_step == ConversationStep.COMPLETED
        assert "Thank you for calling" in response.message


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_audit_events(self):
        driver, _, _ = make_driver()
        call_id = "CA-audit"
        await talk_to_insurance(driver, call_id)
        await driver.process_message(call_id, "Aetna")
        await driver.process_message(call_id, "yes")

        events = get_audit_trail(call_id).event_log
        types = [e["type"] for e in events]
        assert types[0] == "call_start"
        assert "appointment_created" in types
        identity = next(e for e in events if e["type"] == "identity_check")
        assert identity["data"]["phone_number"] == "******4567"
        transitions = [(e["data"]["from"], e["data"]["to"]) for e in events if e["type"] == "transition"]
        assert transitions[0] == ("greeting", "verification")
        await driver.end_call(call_id)

    @pytest.mark.asyncio
    async def test_end_call_is_idempotent(self):
        driver, _, _ = make_driver()
        driver.start_call("CA-end")
        assert await driver.end_call("CA-end") is True
        assert await driver.end_call("CA-end") is False
        assert driver.get_snapshot("CA-end") is None

    def test_snapshot(self):
        driver, _, _ = make_driver()
        driver.start_call("CA-snap")
        snapshot = driver.get_snapshot("CA-snap")
        assert snapshot["callId"] == "CA-snap"
        assert snapshot["step"] == "greeting"

    @pytest.mark.asyncio
    async def test_sweep_stale(self):
        driver, _, _ = make_driver()
        driver.start_call("CA-old")
        later = datetime.now(tz=timezone.utc) + timedelta(hours=2)
        assert await driver.sweep_stale(now=later) == ["CA-old"]
        assert driver.store.get("CA-old") is None
        assert await driver.sweep_stale(now=later) == []
