"""Cache Store -- TTL map with single-flight recomputation.

Entries live under composite keys whose first segment is the entity type
(``deals:manager:u1::month:100:0``) so a mutation can drop every cached view of
one entity type with ``invalidate("deals:")``.

Key implementation details:
- At most one computation per key is in flight. Concurrent callers await the
  same task through ``asyncio.shield`` so a caller being cancelled (client
  disconnect) never cancels the computation the others are waiting on.
- The lookup and the in-flight registration happen without an intervening
  ``await``, which makes check-and-set atomic on the event loop.
- Expired entries are evicted lazily on access and by a periodic sweep; an
  expired entry is never returned.
- Invalidation also forgets in-flight computations, so a result computed from
  pre-mutation data is handed to its waiters but never stored.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from src.salesops.core.monitoring import (
    cache_coalesced_total,
    cache_evictions_total,
    cache_hits_total,
    cache_misses_total,
)

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]

_MISSING = object()


@dataclass
class _Entry:
    value: Any
    expires_at: float


class CacheStats(BaseModel):
    """Point-in-time counters for ``GET /cache/stats``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    hits: int = 0
    misses: int = 0
    coalesced: int = 0
    evictions: int = 0
    keys: int = 0
    inflight: int = 0
    hit_rate: float = 0.0


def _entity_label(key: str) -> str:
    return key.split(":", 1)[0] or "unknown"


class CacheStore:
    """In-process key -> (value, expiry) map.

    Args:
        max_keys: Upper bound on stored entries; the oldest-written entries go first.
        clock: Monotonic seconds source. Tests inject a fake clock.
    """

    def __init__(self, max_keys: int = 1000, clock: Clock = time.monotonic) -> None:
        self._entries: dict[str, _Entry] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._max_keys = max_keys
        self._clock = clock
        self._hits = 0
        self._misses = 0
        self._coalesced = 0
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self._lookup(key) is not _MISSING

    # ── Reads & writes ──────────────────────────────────────────────────

    def get(self, key: str) -> Any | None:
        """Return the live value for ``key`` or None. Evicts an expired entry."""
        value = self._lookup(key)
        return None if value is _MISSING else value

    def _lookup(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return _MISSING
        if entry.expires_at <= self._clock():
            del self._entries[key]
            self._record_eviction("expired")
            return _MISSING
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._entries.pop(key, None)
        self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl_seconds)
        while len(self._entries) > self._max_keys:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            self._record_eviction("capacity")

    async def get_or_compute(
        self,
        key: str,
        ttl_seconds: float,
        compute: Callable[[], Awaitable[Any]],
        should_cache: Callable[[Any], bool] | None = None,
    ) -> Any:
        """Return the cached value for ``key``, computing it at most once concurrently.

        Args:
            key: Composite cache key.
            ttl_seconds: Lifetime of a stored result.
            compute: Zero-argument coroutine function producing the value.
            should_cache: Optional predicate; results it rejects are returned
                to every waiter but not stored.

        Raises:
            Whatever ``compute`` raises, delivered to every coalesced caller.
        """
        value = self._lookup(key)
        if value is not _MISSING:
            self._hits += 1
            cache_hits_total.labels(entity=_entity_label(key)).inc()
            return value

        task = self._inflight.get(key)
        if task is None:
            self._misses += 1
            cache_misses_total.labels(entity=_entity_label(key)).inc()
            logger.debug("cache.miss", key=key)
            task = asyncio.ensure_future(self._run(key, ttl_seconds, compute, should_cache))
            self._inflight[key] = task
        else:
            self._coalesced += 1
            cache_coalesced_total.labels(entity=_entity_label(key)).inc()
            logger.debug("cache.coalesced", key=key)

        return await asyncio.shield(task)

    async def _run(
        self,
        key: str,
        ttl_seconds: float,
        compute: Callable[[], Awaitable[Any]],
        should_cache: Callable[[Any], bool] | None,
    ) -> Any:
        task = asyncio.current_task()
        try:
            value = await compute()
        finally:
            owned = self._inflight.get(key) is task
            if owned:
                del self._inflight[key]

        if owned and (should_cache is None or should_cache(value)):
            self.set(key, value, ttl_seconds)
        return value

    # ── Invalidation & expiry ───────────────────────────────────────────

    def invalidate(self, prefix: str = "") -> int:
        """Drop every entry (and in-flight computation) whose key starts with ``prefix``.

        Returns:
            Number of stored entries removed.
        """
        doomed = [key for key in self._entries if key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        for key in [key for key in self._inflight if key.startswith(prefix)]:
            # The task keeps running for its current waiters; its result is discarded.
            del self._inflight[key]

        if doomed:
            self._evictions += len(doomed)
            cache_evictions_total.labels(reason="invalidated").inc(len(doomed))
        logger.info("cache.invalidated", prefix=prefix, removed=len(doomed))
        return len(doomed)

    def sweep(self) -> int:
        """Evict every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
            self._record_eviction("expired")
        return len(expired)

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Periodically sweep expired entries until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                removed = self.sweep()
                if removed:
                    logger.debug("cache.swept", removed=removed, remaining=len(self._entries))
            except Exception:
                logger.exception("cache.sweep_failed")

    def _record_eviction(self, reason: str) -> None:
        self._evictions += 1
        cache_evictions_total.labels(reason=reason).inc()

    # ── Stats ───────────────────────────────────────────────────────────

    def stats(self) -> CacheStats:
        lookups = self._hits + self._misses
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            coalesced=self._coalesced,
            evictions=self._evictions,
            keys=len(self._entries),
            inflight=len(self._inflight),
            hit_rate=round(self._hits / lookups * 100, 2) if lookups else 0.0,
        )

    def clear(self) -> None:
        self._entries.clear()
        self._inflight.clear()
