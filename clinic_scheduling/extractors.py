"""Rule-based field extraction from caller utterances.

Every function here is pure: same text in, same value out, no I/O.
"No match" is always ``None`` (or ``Intent.GENERAL`` for intents) so the
step handlers can re-prompt without any exception handling.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Iterable, Optional, Sequence

from clinic_scheduling.models.conversation import AppointmentType, Intent, Provider

# Checked in this order; the first group with a keyword in the text wins.
INTENT_KEYWORDS: list[tuple[Intent, tuple[str, ...]]] = [
    (Intent.SCHEDULE, ("schedule", "book", "appointment")),
    (Intent.RESCHEDULE, ("reschedule", "change", "move")),
    (Intent.CANCEL, ("cancel",)),
]

APPOINTMENT_TYPE_KEYWORDS: list[tuple[AppointmentType, tuple[str, ...]]] = [
    (AppointmentType.COMPREHENSIVE_EVALUATION, ("comprehensive", "evaluation")),
    (AppointmentType.FOLLOW_UP, ("follow",)),
    (AppointmentType.KETAMINE_CONSULTATION, ("ketamine",)),
]

AFFIRMATIVE_WORDS = ("yes", "yeah", "yep", "correct", "right")
NEGATIVE_WORDS = ("no", "nope", "incorrect", "wrong")

# Payers the practice is known not to take (no Medicaid, no HMOs).
UNACCEPTED_INSURERS = (
    "medicaid",
    "humana",
    "unitedhealthcare",
    "united healthcare",
    "ambetter",
    "molina",
    "kaiser",
    "hmo",
)

SELF_PAY_PHRASES = ("self-pay", "self pay", "selfpay", "pay myself", "pay out of pocket", "cash")

PHONE_RE = re.compile(r"(\+?1?[-.\s]?)?\(?([0-9]{3})\)?[-.\s]?([0-9]{3})[-.\s]?([0-9]{4})")
DATE_RE = re.compile(r"(\d{1,2}[/-]\d{1,2}[/-]\d{4}|\d{4}[/-]\d{1,2}[/-]\d{1,2})")
TIME_RE = re.compile(
    r"\b(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*(?:(?P<meridiem>[ap])\.?\s?m\b\.?)?",
    re.IGNORECASE,
)

ORDINALS = {
    "first": 1, "1st": 1,
    "second": 2, "2nd": 2,
    "third": 3, "3rd": 3,
    "fourth": 4, "4th": 4,
    "fifth": 5, "5th": 5,
}


class Confirmation(str, Enum):
    YES = "yes"
    NO = "no"


class InsuranceStatus(str, Enum):
    ACCEPTED = "accepted"
    NOT_ACCEPTED = "not_accepted"


@dataclass(frozen=True)
class InsuranceMatch:
    """An insurer named in the utterance and whether the practice takes it."""

    name: str
    status: InsuranceStatus

    @property
    def accepted(self) -> bool:
        return self.status == InsuranceStatus.ACCEPTED


@dataclass(frozen=True)
class IdentityFields:
    """Raw phone / date-of-birth text found in an utterance (either may be None)."""

    phone_number: Optional[str]
    date_of_birth: Optional[str]

    @property
    def complete(self) -> bool:
        return bool(self.phone_number and self.date_of_birth)


class ChangeTarget(str, Enum):
    APPOINTMENT_TYPE = "appointment_type"
    PROVIDER = "provider"
    DATE = "date"
    TIME = "time"


CHANGE_KEYWORDS: list[tuple[ChangeTarget, tuple[str, ...]]] = [
    (ChangeTarget.APPOINTMENT_TYPE, ("type", "kind", "evaluation", "follow", "ketamine")),
    (ChangeTarget.PROVIDER, ("provider", "doctor", "clinician")),
    (ChangeTarget.DATE, ("date", "day")),
    (ChangeTarget.TIME, ("time", "hour", "earlier", "later")),
]


def _contains_any(text: str, keywords: Iterable[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def _has_word(text: str, word: str) -> bool:
    return re.search(rf"\b{re.escape(word)}\b", text) is not None


# ── Intent ──────────────────────────────────────────────────────────


def extract_intent(text: str) -> Intent:
    """Classify the caller's goal by keyword containment, in priority order.

    Containment means "reschedule" also contains "schedule", so schedule
    wins whenever both are present.
    """
    lowered = text.lower()
    for intent, keywords in INTENT_KEYWORDS:
        if _contains_any(lowered, keywords):
            return intent
    return Intent.GENERAL


# ── Identity ────────────────────────────────────────────────────────


def extract_identity(text: str) -> IdentityFields:
    phone_match = PHONE_RE.search(text)
    dob_match = DATE_RE.search(text)
    return IdentityFields(
        phone_number=phone_match.group(0).strip() if phone_match else None,
        date_of_birth=dob_match.group(0) if dob_match else None,
    )


def normalize_phone_number(phone_number: str) -> str:
    """Digits only with a leading +1 country code: ``+19041234567``."""
    digits = re.sub(r"\D", "", phone_number)
    if len(digits) == 10:
        digits = "1" + digits
    return "+" + digits


def normalize_date_of_birth(date_of_birth: str) -> str:
    """Rewrite ``MM/DD/YYYY`` (or ``-``) as ``YYYY-MM-DD``; pads single digits.

    No calendar validation is done here; ``13/45/1990`` becomes ``1990-13-45``.
    """
    parts = re.split(r"[/-]", date_of_birth.strip())
    if len(parts) != 3:
        return date_of_birth
    if len(parts[0]) == 4:
        year, month, day = parts
    else:
        month, day, year = parts
    return f"{year}-{month.zfill(2)}-{day.zfill(2)}"


# ── Appointment details ─────────────────────────────────────────────


def extract_appointment_type(text: str) -> Optional[AppointmentType]:
    lowered = text.lower()
    for appointment_type, keywords in APPOINTMENT_TYPE_KEYWORDS:
        if _contains_any(lowered, keywords):
            return appointment_type
    return None


def extract_provider(text: str, providers: Sequence[Provider]) -> Optional[Provider]:
    """First provider whose display name or id appears in the text."""
    lowered = text.lower()
    for provider in providers:
        if provider.name.lower() in lowered or provider.id.lower() in lowered:
            return provider
    return None


def extract_date(text: str) -> Optional[str]:
    """First date in the text as ``YYYY-MM-DD``; impossible dates are no match."""
    match = DATE_RE.search(text)
    if not match:
        return None
    normalized = normalize_date_of_birth(match.group(0))
    try:
        return date.fromisoformat(normalized).isoformat()
    except ValueError:
        return None


def extract_time(text: str) -> Optional[str]:
    """First clock time in the text as 24-hour ``HH:MM``.

    Accepts ``10:30``, ``10:30 am``, ``4pm``, ``4 p.m.``. A bare number
    with neither minutes nor am/pm is not a time.
    """
    for match in TIME_RE.finditer(text):
        minute_text, meridiem = match.group("minute"), match.group("meridiem")
        if minute_text is None and meridiem is None:
            continue
        hour = int(match.group("hour"))
        minute = int(minute_text or 0)
        if meridiem:
            if not 1 <= hour <= 12:
                continue
            hour = hour % 12 + (12 if meridiem.lower() == "p" else 0)
        if hour > 23 or minute > 59:
            continue
        return f"{hour:02d}:{minute:02d}"
    return None


def states_meridiem(text: str) -> bool:
    """True when a clock time in the text carries am or pm."""
    return any(match.group("meridiem") for match in TIME_RE.finditer(text))


# ── Insurance ───────────────────────────────────────────────────────


def extract_insurance(text: str, accepted: Sequence[str]) -> Optional[InsuranceMatch]:
    """Name an insurer from the utterance.

    Known unaccepted payers are checked first, so "Aetna HMO" is not
    accepted. Anything else unrecognized is ``None``.
    """
    lowered = text.lower()
    for name in UNACCEPTED_INSURERS:
        if _has_word(lowered, name):
            return InsuranceMatch(name=name, status=InsuranceStatus.NOT_ACCEPTED)
    for name in accepted:
        if name.lower() in lowered:
            return InsuranceMatch(name=name.lower(), status=InsuranceStatus.ACCEPTED)
    return None


def wants_self_pay(text: str) -> bool:
    return _contains_any(text.lower(), SELF_PAY_PHRASES)


# ── Confirmation / choices ──────────────────────────────────────────


def extract_confirmation(text: str) -> Optional[Confirmation]:
    """Yes/no by whole-word keywords; affirmatives are checked first.

    An affirmative directly negated ("not correct", "not right") counts
    as a no.
    """
    lowered = text.lower()
    negated = False
    for word in AFFIRMATIVE_WORDS:
        if re.search(rf"\bnot\s+{word}\b", lowered):
            negated = True
            lowered = re.sub(rf"\bnot\s+{word}\b", " ", lowered)
    if any(_has_word(lowered, word) for word in AFFIRMATIVE_WORDS):
        return Confirmation.YES
    if negated or any(_has_word(lowered, word) for word in NEGATIVE_WORDS):
        return Confirmation.NO
    return None


def extract_change_target(text: str) -> Optional[ChangeTarget]:
    lowered = text.lower()
    for target, keywords in CHANGE_KEYWORDS:
        if any(_has_word(lowered, keyword) for keyword in keywords):
            return target
    return None


def extract_choice(text: str, count: int) -> Optional[int]:
    """Zero-based index of an ordinal or number choice among ``count`` items."""
    lowered = text.lower()
    for word, position in ORDINALS.items():
        if _has_word(lowered, word) and position <= count:
            return position - 1
    match = re.search(r"\b(?:number|option|#)\s*(\d+)\b", lowered)
    if match and 1 <= int(match.group(1)) <= count:
        return int(match.group(1)) - 1
    return None
