"""In-process TTL cache for provider availability."""

from __future__ import annotations

import logging
import time
from typing import Callable

from cachetools import TTLCache

from clinic_scheduling.config import settings
from clinic_scheduling.services.base import AppointmentBackend, AvailabilityCache

log = logging.getLogger("clinic_scheduling.services.availability")


class TTLAvailabilityCache(AvailabilityCache):
    """Caches ``available_slots`` per (provider, date) for ``ttl_seconds``.

    Timeouts and errors from the backend propagate to the caller; nothing
    is cached for a failed load. Expired and least-recently-used entries
    are evicted, so at most ``maxsize`` (provider, date) pairs are held.
    """

    def __init__(
        self,
        backend: AppointmentBackend,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        maxsize: int | None = None,
    ) -> None:
        self._backend = backend
        self._entries: TTLCache[tuple[str, str], list[str]] = TTLCache(
            maxsize=settings.availability_cache_maxsize if maxsize is None else maxsize,
            ttl=settings.availability_cache_ttl_seconds if ttl_seconds is None else ttl_seconds,
            timer=clock,
        )

    async def get(self, provider_id: str, date: str) -> list[str]:
        key = (provider_id, date)
        slots = self._entries.get(key)
        if slots is not None:
            return list(slots)

        slots = await self._backend.available_slots(provider_id, date)
        self._entries[key] = list(slots)
        log.debug("Availability cache miss: %s %s (%d slots)", provider_id, date, len(slots))
        return list(slots)

    def invalidate(self, provider_id: str, date: str) -> None:
        self._entries.pop((provider_id, date), None)

    def clear(self) -> None:
        self._entries.clear()
