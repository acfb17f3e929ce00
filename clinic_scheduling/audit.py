"""Per-call audit trail for HIPAA-relevant conversation events.

Each call gets an AuditTrail. Events (call start/end, step transitions,
identity and insurance checks, appointment changes) are appended to the
trail's log and pushed to every subscriber's asyncio.Queue, so a
persistence or monitoring layer can consume them. Phone numbers, dates
of birth and member ids are masked before they reach an event.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import TypedDict

log = logging.getLogger("clinic_scheduling.audit")

SENSITIVE_KEYS = {"phone", "phone_number", "date_of_birth", "dob", "member_id"}


class AuditEvent(TypedDict):
    type: str          # call_start | call_end | transition | identity_check | insurance_check | appointment_* | error
    timestamp: float
    call_id: str
    step: str
    data: dict


def redact_pii(value: str) -> str:
    """Mask PII for logging: show first 3 and last 2 chars only."""
    if not value or len(value) <= 5:
        return "***"
    return value[:3] + "***" + value[-2:]


def mask_phone_number(phone_number: str) -> str:
    """Keep the last four digits: ``******4567``."""
    digits = re.sub(r"\D", "", phone_number or "")
    if len(digits) >= 4:
        return "*" * (len(digits) - 4) + digits[-4:]
    return "*" * len(digits)


def mask_date_of_birth(date_of_birth: str) -> str:
    return re.sub(r"\d", "*", date_of_birth or "")


def sanitize(data: dict) -> dict:
    """Copy of ``data`` with sensitive values masked (one level of nesting)."""
    clean: dict = {}
    for key, value in data.items():
        if isinstance(value, dict):
            clean[key] = sanitize(value)
        elif key in ("phone", "phone_number") and isinstance(value, str):
            clean[key] = mask_phone_number(value)
        elif key in ("date_of_birth", "dob") and isinstance(value, str):
            clean[key] = mask_date_of_birth(value)
        elif key in SENSITIVE_KEYS and isinstance(value, str):
            clean[key] = redact_pii(value)
        else:
            clean[key] = value
    return clean


class AuditTrail:
    """Per-call event log with asyncio.Queue fan-out."""

    def __init__(self, call_id: str) -> None:
        self._call_id = call_id
        self._subscribers: list[asyncio.Queue[AuditEvent]] = []
        self._event_log: list[AuditEvent] = []

    def subscribe(self) -> asyncio.Queue[AuditEvent]:
        q: asyncio.Queue[AuditEvent] = asyncio.Queue(maxsize=200)
        self._subscribers.append(q)
        log.debug("Audit subscriber added for call %s (total: %d)",
                  self._call_id, len(self._subscribers))
        return q

    def unsubscribe(self, q: asyncio.Queue[AuditEvent]) -> None:
        try:
            self._subscribers.remove(q)
        except ValueError:
            pass

    def emit(self, event_type: str, step: str, data: dict) -> AuditEvent:
        """Record an event and broadcast it to all subscribers."""
        event: AuditEvent = {
            "type": event_type,
            "timestamp": time.time(),
            "call_id": self._call_id,
            "step": step,
            "data": sanitize(data),
        }
        self._event_log.append(event)
        log.info("audit call=%s type=%s step=%s data=%s",
                 self._call_id, event_type, step, event["data"])

        for q in self._subscribers:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                # Drop oldest event to make room
                try:
                    q.get_nowait()
                    q.put_nowait(event)
                except (asyncio.QueueEmpty, asyncio.QueueFull):
                    pass
        return event

    @property
    def event_log(self) -> list[AuditEvent]:
        return list(self._event_log)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


# ── Registry ────────────────────────────────────────────────────────

_trails: dict[str, AuditTrail] = {}


def get_audit_trail(call_id: str) -> AuditTrail:
    """Get or create the audit trail for a call."""
    if call_id not in _trails:
        _trails[call_id] = AuditTrail(call_id)
    return _trails[call_id]


def remove_audit_trail(call_id: str) -> None:
    _trails.pop(call_id, None)
