"""In-process read-through cache for tariff lookups.

Tariffs are read on every ``start`` and change rarely, so lookups go
through a small TTL cache keyed on ``(tenant_id, resource_id)``.  The cache
is advisory: a session captures its rate at start time, so a stale entry can
at worst bill a new session at the previous rate for one TTL window.

Design notes:
    * Thread-safe via a threading lock; entries are evicted lazily on access.
    * Misses (unknown or inactive resources) are never cached, so a newly
      registered resource is usable immediately.
    * Writers call :meth:`TariffCache.invalidate` after changing a tariff.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from meter_engine.models.policy import TariffResource

logger = logging.getLogger(__name__)

_DEFAULT_TTL_SECONDS = 300


@dataclass(slots=True)
class _CacheEntry:
    """A cached tariff with a monotonic expiry timestamp."""

    value: TariffResource
    expires_at: float
    created_at: float = field(default_factory=time.monotonic)


class TariffCache:
    """TTL cache sitting in front of :class:`~meter_engine.state.repository.TariffRepository`.

    Parameters
    ----------
    ttl_seconds:
        How long an entry stays fresh.
    max_entries:
        Capacity; when exceeded, expired then oldest entries are evicted.
    enabled:
        If ``False``, every lookup goes straight to the loader.
    clock:
        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        *,
        ttl_seconds: int = _DEFAULT_TTL_SECONDS,
        max_entries: int = 10_000,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store: dict[tuple[str, str], _CacheEntry] = {}
        self._lock = threading.Lock()
        self._ttl = ttl_seconds
        self._max_entries = max(1, max_entries)
        self._enabled = enabled
        self._clock = clock

        self._hits = 0
        self._misses = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, tenant_id: str, resource_id: str) -> TariffResource | None:
        """Return a fresh cached tariff, or ``None`` on miss or expiry."""
        if not self._enabled:
            return None

        key = (tenant_id, resource_id)
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._clock() > entry.expires_at:
                del self._store[key]
                self._misses += 1
                logger.debug("Tariff cache expired: tenant=%s resource=%s", tenant_id, resource_id)
                return None
            self._hits += 1
            return entry.value

    def put(self, tariff: TariffResource) -> None:
        """Cache *tariff* for the configured TTL."""
        if not self._enabled:
            return

        key = (tariff.tenant_id, tariff.resource_id)
        now = self._clock()
        with self._lock:
            if len(self._store) >= self._max_entries and key not in self._store:
                self._evict_oldest(now)
            self._store[key] = _CacheEntry(value=tariff, expires_at=now + self._ttl, created_at=now)

    async def get_or_load(
        self,
        tenant_id: str,
        resource_id: str,
        loader: Callable[[], Awaitable[TariffResource | None]],
    ) -> TariffResource | None:
        """Read-through lookup: serve from cache or await *loader* and cache an active hit."""
        cached = self.get(tenant_id, resource_id)
        if cached is not None:
            return cached

        tariff = await loader()
        if tariff is not None and tariff.is_active:
            self.put(tariff)
        return tariff

    def invalidate(self, tenant_id: str, resource_id: str) -> bool:
        """Drop one entry.  Returns ``True`` if it was cached."""
        with self._lock:
            removed = self._store.pop((tenant_id, resource_id), None)
        return removed is not None

    def invalidate_all(self) -> int:
        """Flush the cache.  Returns the number of entries removed."""
        with self._lock:
            count = len(self._store)
            self._store.clear()
            self._hits = 0
            self._misses = 0
        logger.info("Tariff cache flushed: removed %d entries", count)
        return count

    @property
    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "entries": len(self._store),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / total, 4) if total > 0 else 0.0,
                "max_entries": self._max_entries,
                "enabled": self._enabled,
            }

    @property
    def size(self) -> int:
        return len(self._store)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _evict_oldest(self, now: float) -> None:
        """Remove expired entries, then the oldest 10% if still full.

        Must be called while holding ``self._lock``.
        """
        for key in [k for k, v in self._store.items() if now > v.expires_at]:
            del self._store[key]
        if len(self._store) < self._max_entries:
            return

        evict_count = max(1, self._max_entries // 10)
        for key in sorted(self._store, key=lambda k: self._store[k].created_at)[:evict_count]:
            del self._store[key]
