"""Provider directory, weekly schedules and accepted insurers.

Slots are generated from the weekly schedule alone: every
``slot_minutes`` step from opening to closing, minus the lunch window.
Appointment length is not considered, so a 60-minute evaluation booked at
10:30 still leaves 10:45 on offer.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

from clinic_scheduling.config import Settings, settings as default_settings
from clinic_scheduling.models.conversation import AppointmentType, DayHours, Provider

log = logging.getLogger("clinic_scheduling.directory")

APPOINTMENT_DURATIONS: dict[AppointmentType, int] = {
    AppointmentType.COMPREHENSIVE_EVALUATION: 60,
    AppointmentType.FOLLOW_UP: 15,
    AppointmentType.KETAMINE_CONSULTATION: 30,
}

APPOINTMENT_LABELS: dict[AppointmentType, str] = {
    AppointmentType.COMPREHENSIVE_EVALUATION: "Comprehensive evaluation",
    AppointmentType.FOLLOW_UP: "Follow-up",
    AppointmentType.KETAMINE_CONSULTATION: "Ketamine consultation",
}


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def _hhmm(total_minutes: int) -> str:
    return f"{total_minutes // 60:02d}:{total_minutes % 60:02d}"


class DomainDirectory:
    """Read-only view of the practice's providers and rules."""

    def __init__(self, config: Settings | None = None) -> None:
        config = config or default_settings
        self._timezone = ZoneInfo(config.practice_timezone)
        self._lunch_start = _minutes(config.lunch_break_start)
        self._lunch_end = _minutes(config.lunch_break_end)
        self._slot_minutes = config.slot_minutes
        self._horizon_days = config.booking_horizon_days
        self._accepted_insurers = config.accepted_insurers
        self._providers = self._load_providers(config.provider_schedules)

    @staticmethod
    def _load_providers(raw: dict) -> list[Provider]:
        providers = []
        for provider_id, entry in raw.items():
            schedule = {
                day.lower(): DayHours(**hours)
                for day, hours in (entry.get("schedule") or {}).items()
                if hours
            }
            providers.append(Provider(
                id=provider_id,
                name=entry.get("name") or provider_id.replace("_", " ").title(),
                schedule=schedule,
                follow_up_only=bool(entry.get("follow_up_only", False)),
            ))
        log.info("Loaded %d providers", len(providers))
        return providers

    # ── Providers ───────────────────────────────────────────────

    @property
    def all_providers(self) -> list[Provider]:
        return list(self._providers)

    def providers_for(self, appointment_type: Optional[AppointmentType]) -> list[Provider]:
        """General providers in directory order, then follow-up-only ones for follow-ups."""
        general = [p for p in self._providers if not p.follow_up_only]
        if appointment_type == AppointmentType.FOLLOW_UP:
            return general + [p for p in self._providers if p.follow_up_only]
        return general

    def provider(self, provider_id: str) -> Optional[Provider]:
        for provider in self._providers:
            if provider.id == provider_id:
                return provider
        return None

    # ── Dates and times ─────────────────────────────────────────

    def today(self) -> date:
        return datetime.now(tz=self._timezone).date()

    def available_dates(self, provider: Provider, today: date | None = None) -> list[str]:
        """Working days for ``provider`` over the horizon, starting tomorrow."""
        today = today or self.today()
        dates = []
        for offset in range(1, self._horizon_days + 1):
            day = today + timedelta(days=offset)
            if day.strftime("%A").lower() in provider.schedule:
                dates.append(day.isoformat())
        return dates

    def available_times(self, provider: Provider, day: str) -> list[str]:
        """Schedule slots for ``provider`` on ``day`` (``YYYY-MM-DD``), lunch excluded."""
        weekday = date.fromisoformat(day).strftime("%A").lower()
        hours = provider.schedule.get(weekday)
        if not hours:
            return []

        times = []
        for slot in range(_minutes(hours.start), _minutes(hours.end), self._slot_minutes):
            if self._lunch_start <= slot < self._lunch_end:
                continue
            times.append(_hhmm(slot))
        return times

    def works_on(self, provider: Provider, day: str, today: date | None = None) -> bool:
        return day in self.available_dates(provider, today=today)

    # ── Appointment types ───────────────────────────────────────

    @staticmethod
    def duration_for(appointment_type: AppointmentType) -> int:
        return APPOINTMENT_DURATIONS[appointment_type]

    @staticmethod
    def appointment_type_options() -> list[str]:
        return [
            f"{APPOINTMENT_LABELS[t]} ({APPOINTMENT_DURATIONS[t]} minutes)"
            for t in AppointmentType
        ]

    # ── Insurance ───────────────────────────────────────────────

    @property
    def accepted_insurers(self) -> list[str]:
        return list(self._accepted_insurers)

    def accepted_insurer_names(self) -> list[str]:
        """Display names: "Aetna", "Blue Cross Blue Shield", ..."""
        return [name.title() for name in self._accepted_insurers]

    def accepted_insurers_sentence(self) -> str:
        return _join_names(self.accepted_insurer_names())

    def is_accepted_insurer(self, name: str) -> bool:
        lowered = name.lower()
        return any(accepted in lowered for accepted in self._accepted_insurers)


def _join_names(names: Sequence[str]) -> str:
    if len(names) <= 1:
        return "".join(names)
    return ", ".join(names[:-1]) + ", and " + names[-1]
