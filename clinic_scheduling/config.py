"""Application configuration via environment variables."""

from __future__ import annotations

import json
import logging

from pydantic_settings import BaseSettings

log = logging.getLogger("clinic_scheduling.config")

# Charles Maddix: Mon-Thu, Ava Suleiman: Tuesday only, Dr. Soto: late
# afternoons Mon-Thu (follow-ups only).
DEFAULT_PROVIDER_SCHEDULES = {
    "charles_maddix": {
        "name": "Charles Maddix",
        "schedule": {
            "monday": {"start": "10:30", "end": "18:00"},
            "tuesday": {"start": "10:30", "end": "18:00"},
            "wednesday": {"start": "10:30", "end": "18:00"},
            "thursday": {"start": "10:30", "end": "18:00"},
        },
    },
    "ava_suleiman": {
        "name": "Ava Suleiman",
        "schedule": {
            "tuesday": {"start": "10:30", "end": "18:00"},
        },
    },
    "dr_soto": {
        "name": "Dr. Soto",
        "follow_up_only": True,
        "schedule": {
            "monday": {"start": "16:00", "end": "18:00"},
            "tuesday": {"start": "16:00", "end": "18:00"},
            "wednesday": {"start": "16:00", "end": "18:00"},
            "thursday": {"start": "16:00", "end": "18:00"},
        },
    },
}


class Settings(BaseSettings):
    # Practice
    practice_name: str = "The Practice"
    agent_name: str = "Matt"
    practice_timezone: str = "America/New_York"

    # Scheduling rules
    lunch_break_start: str = "13:00"
    lunch_break_end: str = "14:00"
    slot_minutes: int = 15
    booking_horizon_days: int = 30
    provider_schedules_json: str = ""
    accepted_insurance: str = "aetna,blue cross blue shield,cigna,medicare,tricare"

    # IntakeQ (practice management)
    intakeq_base_url: str = "https://api.intakeq.com/v1"
    intakeq_api_key: str = ""
    intakeq_clinic_id: str = ""

    # Availity (insurance eligibility)
    availity_base_url: str = "https://api.availity.com/v1"
    availity_api_key: str = ""
    availity_secret: str = ""
    practice_npi: str = ""

    # Timeouts and caching
    http_timeout_seconds: float = 30.0
    availability_cache_ttl_seconds: int = 300
    availability_cache_maxsize: int = 1000
    session_idle_timeout_seconds: int = 1800

    # Identity verification
    verification_max_attempts: int = 3
    verification_lockout_seconds: int = 15 * 60

    log_level: str = "INFO"
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def provider_schedules(self) -> dict:
        """Provider directory: PROVIDER_SCHEDULES JSON, or the practice defaults."""
        if not self.provider_schedules_json:
            return DEFAULT_PROVIDER_SCHEDULES
        return json.loads(self.provider_schedules_json)

    @property
    def accepted_insurers(self) -> list[str]:
        return [
            name.strip().lower()
            for name in self.accepted_insurance.split(",")
            if name.strip()
        ]

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []

        if self.provider_schedules_json:
            try:
                schedules = json.loads(self.provider_schedules_json)
            except json.JSONDecodeError as exc:
                raise ValueError(f"PROVIDER_SCHEDULES_JSON is not valid JSON: {exc}") from exc
            if not isinstance(schedules, dict) or not schedules:
                raise ValueError("PROVIDER_SCHEDULES_JSON must be a non-empty object.")

        if self.lunch_break_start >= self.lunch_break_end:
            raise ValueError(
                f"LUNCH_BREAK_START ({self.lunch_break_start}) must be before "
                f"LUNCH_BREAK_END ({self.lunch_break_end})."
            )

        if self.slot_minutes <= 0 or 60 % self.slot_minutes:
            raise ValueError("SLOT_MINUTES must divide an hour evenly.")

        if not self.intakeq_api_key:
            warnings.append(
                "INTAKEQ_API_KEY not set. Appointments will use the in-memory demo backend."
            )

        if not (self.availity_api_key and self.availity_secret):
            warnings.append(
                "AVAILITY_API_KEY/AVAILITY_SECRET not set. Insurance checks will be simulated."
            )

        if not self.accepted_insurers:
            warnings.append("ACCEPTED_INSURANCE is empty. Every caller will be offered self-pay.")

        return warnings


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger so all clinic_scheduling loggers are visible."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(name)-32s %(levelname)-7s %(message)s",
    )
