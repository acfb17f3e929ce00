"""Keyed store of conversation records, one per active call.

The store is the only holder of ``ConversationRecord`` objects. Records
are immutable pydantic models: callers read a snapshot with ``get`` and
write a whole new record back with ``replace`` or ``merge``.

Writers for the same call must hold ``lock(call_id)`` so that at most one
read-modify-write per call is in flight. Distinct calls never contend. A
lock outlives its record while anyone still holds or waits on it, so a
call that is ended and started again keeps turns strictly ordered.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional

from clinic_scheduling.errors import CallNotFoundError, DuplicateCallError
from clinic_scheduling.models.conversation import (
    ConversationRecord,
    RecordUpdate,
    apply_update,
)

log = logging.getLogger("clinic_scheduling.store")


class ConversationStore:
    """In-memory call_id → ConversationRecord map with per-call locks."""

    def __init__(self) -> None:
        self._records: dict[str, ConversationRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._records

    # ── CRUD ────────────────────────────────────────────────────

    def create(self, call_id: str) -> ConversationRecord:
        with self._guard:
            if call_id in self._records:
                raise DuplicateCallError(call_id)
            record = ConversationRecord.new(call_id)
            self._records[call_id] = record
            self._locks.setdefault(call_id, asyncio.Lock())
        log.info("Conversation created: %s", call_id)
        return record

    def get(self, call_id: str) -> Optional[ConversationRecord]:
        return self._records.get(call_id)

    def require(self, call_id: str) -> ConversationRecord:
        record = self._records.get(call_id)
        if record is None:
            raise CallNotFoundError(call_id)
        return record

    def merge(self, call_id: str, update: RecordUpdate) -> ConversationRecord:
        """Apply a partial update to an existing record."""
        with self._guard:
            record = self._records.get(call_id)
            if record is None:
                raise CallNotFoundError(call_id)
            updated = apply_update(record, update)
            self._records[call_id] = updated
        return updated

    def replace(
        self,
        call_id: str,
        record: ConversationRecord,
        expected: ConversationRecord | None = None,
    ) -> None:
        """Store a complete new record for an existing call.

        With ``expected``, the write only happens if the stored record is
        still that exact object; otherwise the call was ended (and maybe
        started again) since it was read, and CallNotFoundError is raised.
        """
        if record.call_id != call_id:
            raise ValueError(f"Record for {record.call_id} cannot be stored under {call_id}")
        with self._guard:
            current = self._records.get(call_id)
            if current is None or (expected is not None and current is not expected):
                raise CallNotFoundError(call_id)
            self._records[call_id] = record

    def remove(self, call_id: str) -> bool:
        """Drop a call. Unknown or already-removed calls are a no-op."""
        with self._guard:
            removed = self._records.pop(call_id, None)
            if not self._lock_users.get(call_id):
                self._locks.pop(call_id, None)
        if removed is not None:
            log.info("Conversation removed: %s", call_id)
        return removed is not None

    def call_ids(self) -> list[str]:
        return list(self._records)

    # ── Concurrency ─────────────────────────────────────────────

    @asynccontextmanager
    async def lock(self, call_id: str) -> AsyncIterator[None]:
        """Serialize mutations for one call.

        Unknown calls get a temporary lock; the caller's lookup inside the
        block reports the missing record. The lock is dropped once its last
        user leaves and the record is gone.
        """
        with self._guard:
            lock = self._locks.get(call_id)
            if lock is None:
                lock = self._locks[call_id] = asyncio.Lock()
            self._lock_users[call_id] = self._lock_users.get(call_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            with self._guard:
                users = self._lock_users[call_id] - 1
                if users:
                    self._lock_users[call_id] = users
                else:
                    del self._lock_users[call_id]
                    if call_id not in self._records and self._locks.get(call_id) is lock:
                        del self._locks[call_id]

    # ── Expiry ──────────────────────────────────────────────────

    def stale_call_ids(self, max_idle: timedelta, now: datetime | None = None) -> list[str]:
        now = now or datetime.now(tz=timezone.utc)
        return [
            call_id
            for call_id, record in list(self._records.items())
            if now - record.last_activity > max_idle
        ]

    def sweep_stale(self, max_idle: timedelta, now: datetime | None = None) -> list[str]:
        """Remove records idle for longer than ``max_idle``. Returns removed ids."""
        removed = [
            call_id for call_id in self.stale_call_ids(max_idle, now=now)
            if self.remove(call_id)
        ]
        if removed:
            log.info("Swept %d stale conversation(s)", len(removed))
        return removed
