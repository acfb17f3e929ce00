"""Caller identity verification by phone number and date of birth.

Both values are validated, normalized (``+1XXXXXXXXXX`` / ``YYYY-MM-DD``)
and matched against the client directory. Repeated failures for the same
phone number lock it out for a while.
"""

from __future__ import annotations

import hmac
import logging
import re
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from clinic_scheduling.audit import mask_date_of_birth, mask_phone_number
from clinic_scheduling.config import settings
from clinic_scheduling.extractors import normalize_date_of_birth, normalize_phone_number
from clinic_scheduling.models.conversation import ClientInfo
from clinic_scheduling.models.verification import IdentityResult
from clinic_scheduling.services.base import IdentityVerifier

log = logging.getLogger("clinic_scheduling.services.verification")

ClientLookup = Callable[[str, str], Awaitable[Optional[ClientInfo]]]

_DOB_RE = re.compile(r"^(\d{1,2}[/-]\d{1,2}[/-]\d{4}|\d{4}[/-]\d{1,2}[/-]\d{1,2})$")


@dataclass
class _Attempts:
    count: int = 0
    locked_until: float = 0.0


def is_valid_phone_number(phone_number: str) -> bool:
    digits = re.sub(r"\D", "", phone_number or "")
    return len(digits) in (10, 11)


def is_valid_date_of_birth(date_of_birth: str) -> bool:
    return bool(_DOB_RE.match((date_of_birth or "").strip()))


def _same(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


class VerificationService(IdentityVerifier):
    """IdentityVerifier backed by a client lookup (IntakeQ or a local directory).

    ``lookup(phone, dob)`` receives normalized values and returns the
    candidate client, or None. The service re-checks the returned record
    against both values before reporting success.
    """

    def __init__(
        self,
        lookup: ClientLookup,
        max_attempts: int | None = None,
        lockout_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lookup = lookup
        self._max_attempts = max_attempts or settings.verification_max_attempts
        self._lockout_seconds = (
            settings.verification_lockout_seconds if lockout_seconds is None else lockout_seconds
        )
        self._clock = clock
        self._attempts: dict[str, _Attempts] = {}

    async def verify(self, phone_number: str, date_of_birth: str) -> IdentityResult:
        if not is_valid_phone_number(phone_number):
            log.warning("Invalid phone number format: %s", mask_phone_number(phone_number))
            return IdentityResult(
                verified=False,
                error="Invalid phone number format",
                attempts_remaining=self.remaining_attempts(phone_number),
            )

        if not is_valid_date_of_birth(date_of_birth):
            log.warning("Invalid date of birth format: %s", mask_date_of_birth(date_of_birth))
            return IdentityResult(
                verified=False,
                error="Invalid date of birth format",
                attempts_remaining=self.remaining_attempts(phone_number),
            )

        if self.is_locked_out(phone_number):
            log.warning("Phone number locked out: %s", mask_phone_number(phone_number))
            return IdentityResult(
                verified=False,
                error="Too many failed attempts. Please try again later.",
                attempts_remaining=0,
                locked_out=True,
            )

        phone = normalize_phone_number(phone_number)
        dob = normalize_date_of_birth(date_of_birth)
        client = await self._lookup(phone, dob)

        if client and _same(normalize_phone_number(client.phone), phone) and _same(
            normalize_date_of_birth(client.date_of_birth), dob
        ):
            self._attempts.pop(phone, None)
            log.info("Client verified: %s", mask_phone_number(phone))
            return IdentityResult(verified=True, client_info=client)

        self._record_failure(phone)
        log.warning("Client verification failed: %s", mask_phone_number(phone))
        return IdentityResult(
            verified=False,
            error="Phone number and date of birth do not match our records",
            attempts_remaining=self.remaining_attempts(phone_number),
            locked_out=self.is_locked_out(phone_number),
        )

    # ── Attempt tracking ────────────────────────────────────────

    def _record_failure(self, phone: str) -> None:
        attempts = self._attempts.setdefault(phone, _Attempts())
        attempts.count += 1
        if attempts.count >= self._max_attempts:
            attempts.locked_until = self._clock() + self._lockout_seconds
            log.warning("Phone number locked out after %d failed attempts: %s",
                        attempts.count, mask_phone_number(phone))

    def is_locked_out(self, phone_number: str) -> bool:
        phone = normalize_phone_number(phone_number)
        attempts = self._attempts.get(phone)
        if not attempts or not attempts.locked_until:
            return False
        if self._clock() >= attempts.locked_until:
            del self._attempts[phone]
            return False
        return True

    def remaining_attempts(self, phone_number: str) -> int:
        attempts = self._attempts.get(normalize_phone_number(phone_number))
        if not attempts:
            return self._max_attempts
        return max(0, self._max_attempts - attempts.count)
