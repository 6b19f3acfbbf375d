"""Aggregator -- parallel multi-provider fetch, normalization, scoping and caching.

Pipeline for one entity type:

    providers (parallel, bounded) -> RecordNormalizer -> merge by id
        -> RoleFilter -> date window -> newest first -> page

Two cache layers share the Cache Store:
- ``<entity>:source`` holds the merged canonical records of an entity type,
  shared by every requester.
- ``<entity>:<role>:<user>:<team>:<window>:<limit>:<offset>`` holds one
  requester's scoped page plus the complete scoped set used for analytics.

Both start with the entity type, so ``invalidate("<entity>:")`` clears every
view after a mutation. Results carrying provider errors are never cached.

Failure policy: a provider failure or timeout becomes a PartialError. An entity
type is marked failed (empty, annotated) only when all of its providers failed;
sibling entity types are unaffected.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, time as dt_time, timedelta, timezone
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.salesops.aggregation.analytics import compute_analytics
from src.salesops.aggregation.cache import CacheStore
from src.salesops.config import Settings, get_settings
from src.salesops.core.monitoring import (
    provider_failures_total,
    provider_fetch_duration_seconds,
    records_dropped_total,
)
from src.salesops.errors import ProviderTimeout, ProviderUnavailable
from src.salesops.providers.base import ProviderRegistry, RecordProvider
from src.salesops.records.access import RoleFilter
from src.salesops.records.normalizer import RecordNormalizer
from src.salesops.records.schemas import EntityType, Requester

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]

SOURCE_SEGMENT = "source"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ── Date windows ────────────────────────────────────────────────────────────

_WINDOW_DAYS: dict[str, int] = {"week": 7, "month": 30, "quarter": 90, "year": 365}


@dataclass(frozen=True)
class DateWindow:
    """Inclusive lower bound on record timestamps; ``since=None`` means no bound.

    ``label`` is the canonical spelling used in cache keys.
    """

    label: str
    since: datetime | None = None

    @classmethod
    def parse(cls, raw: str | None, now: datetime) -> DateWindow:
        """Parse ``today|week|month|quarter|year|all`` or a day count like ``30``.

        Unknown values behave as ``all``.
        """
        value = (raw or "all").strip().lower()
        if value == "today":
            start = datetime.combine(now.date(), dt_time.min, tzinfo=now.tzinfo or timezone.utc)
            return cls("today", start)
        if value in _WINDOW_DAYS:
            return cls(value, now - timedelta(days=_WINDOW_DAYS[value]))
        if value.isdigit() and int(value) > 0:
            days = int(value)
            return cls(f"{days}d", now - timedelta(days=days))
        return cls("all")

    def contains(self, moment: datetime | None) -> bool:
        if self.since is None:
            return True
        return moment is not None and moment >= self.since


def record_moment(entity_type: EntityType, record: Any) -> datetime | None:
    """Timestamp a record is dated and ordered by; None for undated records."""
    if entity_type is EntityType.DEALS:
        return record.created_at or _at_midnight(record.signup_date)
    if entity_type is EntityType.CALLBACKS:
        return record.created_at or _at_midnight(record.first_call_date)
    if entity_type is EntityType.NOTIFICATIONS:
        return record.timestamp
    if entity_type is EntityType.TARGETS:
        return record.updated_at or record.created_at
    return None


def _at_midnight(day) -> datetime | None:
    if day is None:
        return None
    return datetime.combine(day, dt_time.min, tzinfo=timezone.utc)


# Date windows restrict activity records only; targets and users are reference data.
_DATED_ENTITIES = {EntityType.DEALS, EntityType.CALLBACKS, EntityType.NOTIFICATIONS}


def newest_first(entity_type: EntityType, records: Sequence[Any]) -> list[Any]:
    """Stable newest-first ordering; undated records keep their order at the end."""
    def sort_key(record: Any) -> tuple[bool, float]:
        moment = record_moment(entity_type, record)
        return (moment is None, -moment.timestamp() if moment else 0.0)

    return sorted(records, key=sort_key)


# ── Result shapes ───────────────────────────────────────────────────────────


class PartialError(BaseModel):
    """One provider that failed to answer for one entity type."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    entity_type: str
    provider: str
    kind: str = "unavailable"
    message: str = ""

    @classmethod
    def from_exception(cls, exc: ProviderUnavailable) -> PartialError:
        return cls(
            entity_type=exc.entity_type,
            provider=exc.provider,
            kind="timeout" if isinstance(exc, ProviderTimeout) else "unavailable",
            message=exc.reason,
        )


@dataclass
class SourceSnapshot:
    """Merged canonical records of one entity type across its providers."""

    entity_type: EntityType
    records: list[Any] = field(default_factory=list)
    dropped: int = 0
    errors: list[PartialError] = field(default_factory=list)
    failed: bool = False


@dataclass
class EntityResult:
    """One requester's scoped view of an entity type.

    ``records`` is the requested page; ``matched`` is the complete scoped,
    date-windowed set the page was cut from.
    """

    entity_type: EntityType
    records: list[Any] = field(default_factory=list)
    matched: list[Any] = field(default_factory=list)
    dropped: int = 0
    errors: list[PartialError] = field(default_factory=list)
    failed: bool = False

    @property
    def total(self) -> int:
        return len(self.matched)


class UnifiedMetadata(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    partial_errors: list[PartialError] = Field(default_factory=list)
    failed_types: list[str] = Field(default_factory=list)
    totals: dict[str, int] = Field(default_factory=dict)
    dropped: dict[str, int] = Field(default_factory=dict)
    date_range: str = "all"
    limit: int = 0
    offset: int = 0
    generated_at: datetime | None = None


class UnifiedResult(BaseModel):
    """Response body of ``GET /unified-data``."""

    success: bool = True
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: UnifiedMetadata = Field(default_factory=UnifiedMetadata)
    error: str | None = None

    def to_response(self) -> dict[str, Any]:
        body = self.model_dump(mode="json", by_alias=True)
        if body["error"] is None:
            del body["error"]
        return body


def _cacheable(result: SourceSnapshot | EntityResult) -> bool:
    return not result.errors


# ── Aggregator ──────────────────────────────────────────────────────────────


class Aggregator:
    """Builds role-scoped, cached multi-entity record sets.

    Args:
        registry: Entity type -> Record Providers routing.
        cache: Shared Cache Store.
        settings: TTLs, provider timeout and paging bounds.
        normalizer: Record Normalizer (default field tables when omitted).
        role_filter: Role Filter.
        clock: Wall-clock source for date windows and metadata.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        cache: CacheStore,
        settings: Settings | None = None,
        normalizer: RecordNormalizer | None = None,
        role_filter: RoleFilter | None = None,
        clock: Clock = utc_now,
    ) -> None:
        settings = settings or get_settings()
        self._registry = registry
        self._cache = cache
        self._normalizer = normalizer or RecordNormalizer()
        self._role_filter = role_filter or RoleFilter()
        self._clock = clock
        self._timeout = settings.provider_timeout_seconds
        self._ttl = settings.CACHE_TTL_SECONDS
        self._reference_ttl = settings.CACHE_REFERENCE_TTL_SECONDS
        self._default_limit = settings.DEFAULT_PAGE_LIMIT
        self._max_limit = settings.MAX_PAGE_LIMIT

    @property
    def cache(self) -> CacheStore:
        return self._cache

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def ttl_for(self, entity_type: EntityType) -> float:
        return self._reference_ttl if entity_type is EntityType.USERS else self._ttl

    def clamp_page(self, limit: int | None, offset: int | None) -> tuple[int, int]:
        if limit is None or limit <= 0:
            limit = self._default_limit
        return min(limit, self._max_limit), max(offset or 0, 0)

    # ── Unified fetch ───────────────────────────────────────────────────

    async def fetch_unified(
        self,
        requester: Requester,
        entity_types: Sequence[EntityType],
        date_range: str | None = "all",
        limit: int | None = None,
        offset: int | None = 0,
        include_analytics: bool | None = None,
    ) -> UnifiedResult:
        """Fetch every requested entity type in parallel and assemble the response.

        Args:
            requester: Identity the record sets are scoped to.
            entity_types: Requested entity types (order kept in ``data``).
            date_range: Window name or day count; unknown values mean ``all``.
            limit: Page size per entity type (clamped to MAX_PAGE_LIMIT).
            offset: Page start per entity type.
            include_analytics: Force analytics on/off; by default they are
                derived whenever deals or callbacks are requested.
        """
        now = self._clock()
        window = DateWindow.parse(date_range, now)
        limit, offset = self.clamp_page(limit, offset)

        results: list[EntityResult] = await asyncio.gather(
            *(self.fetch_entity(requester, et, window, limit, offset) for et in entity_types)
        )
        by_type = {result.entity_type: result for result in results}

        metadata = UnifiedMetadata(date_range=window.label, limit=limit, offset=offset, generated_at=now)
        data: dict[str, Any] = {}
        for result in results:
            key = result.entity_type.value
            data[key] = [record.to_wire() for record in result.records]
            metadata.totals[key] = result.total
            metadata.dropped[key] = result.dropped
            metadata.partial_errors.extend(result.errors)
            if result.failed:
                metadata.failed_types.append(key)

        if include_analytics is None:
            include_analytics = EntityType.DEALS in by_type or EntityType.CALLBACKS in by_type
        if include_analytics:
            analytics = compute_analytics(
                deals=by_type[EntityType.DEALS].matched if EntityType.DEALS in by_type else None,
                callbacks=(
                    by_type[EntityType.CALLBACKS].matched if EntityType.CALLBACKS in by_type else None
                ),
                targets=by_type[EntityType.TARGETS].matched if EntityType.TARGETS in by_type else None,
            )
            data["analytics"] = analytics.to_wire()

        success = not results or len(metadata.failed_types) < len(results)
        if metadata.partial_errors:
            logger.warning(
                "aggregator.partial_result",
                failed_types=metadata.failed_types,
                errors=len(metadata.partial_errors),
                role=requester.role.value if requester.role else None,
            )
        return UnifiedResult(
            success=success,
            data=data,
            metadata=metadata,
            error=None if success else "All record providers failed for the requested data types",
        )

    async def fetch_entity(
        self,
        requester: Requester,
        entity_type: EntityType,
        window: DateWindow,
        limit: int,
        offset: int,
    ) -> EntityResult:
        """Scoped, windowed, paged view of one entity type (cached per requester)."""
        if requester.role is None:
            # No recognized role: empty, indistinguishable from "no data".
            return EntityResult(entity_type=entity_type)

        key = ":".join(
            [entity_type.value, requester.scope_key, window.label, str(limit), str(offset)]
        )

        async def compute() -> EntityResult:
            source = await self.load_source(entity_type)
            visible = self._role_filter.filter(entity_type, source.records, requester)
            if entity_type in _DATED_ENTITIES:
                visible = [r for r in visible if window.contains(record_moment(entity_type, r))]
            ordered = newest_first(entity_type, visible)
            return EntityResult(
                entity_type=entity_type,
                records=ordered[offset : offset + limit],
                matched=ordered,
                dropped=source.dropped,
                errors=list(source.errors),
                failed=source.failed,
            )

        return await self._cache.get_or_compute(
            key, self.ttl_for(entity_type), compute, should_cache=_cacheable
        )

    # ── Source loading ──────────────────────────────────────────────────

    async def load_source(self, entity_type: EntityType, fresh: bool = False) -> SourceSnapshot:
        """Merged canonical records of ``entity_type`` across its providers.

        Args:
            fresh: Bypass the cache (used by read-modify-write paths).
        """
        if fresh:
            return await self._fetch_source(entity_type)
        key = f"{entity_type.value}:{SOURCE_SEGMENT}"
        return await self._cache.get_or_compute(
            key,
            self.ttl_for(entity_type),
            lambda: self._fetch_source(entity_type),
            should_cache=_cacheable,
        )

    async def load_records(self, entity_type: EntityType, fresh: bool = False) -> list[Any]:
        """Canonical records of ``entity_type``, unscoped.

        Raises:
            ProviderUnavailable: If every provider of the entity type failed.
        """
        source = await self.load_source(entity_type, fresh=fresh)
        if source.failed:
            first = source.errors[0] if source.errors else None
            raise ProviderUnavailable(
                first.provider if first else "none",
                entity_type.value,
                first.message if first else "no provider configured",
            )
        return source.records

    async def _fetch_source(self, entity_type: EntityType) -> SourceSnapshot:
        providers = self._registry.providers_for(entity_type)
        snapshot = SourceSnapshot(entity_type=entity_type)
        if not providers:
            snapshot.errors.append(
                PartialError(
                    entity_type=entity_type.value,
                    provider="none",
                    message="no provider configured",
                )
            )
            snapshot.failed = True
            return snapshot

        outcomes = await asyncio.gather(
            *(self._fetch_provider(provider, entity_type) for provider in providers),
            return_exceptions=True,
        )

        seen: set[str] = set()
        for provider, outcome in zip(providers, outcomes):
            if isinstance(outcome, ProviderUnavailable):
                snapshot.errors.append(PartialError.from_exception(outcome))
                continue
            if isinstance(outcome, BaseException):
                raise outcome

            result = self._normalizer.normalize_many(entity_type, outcome)
            snapshot.dropped += result.dropped
            for record in result.records:
                if record.id in seen:
                    continue
                seen.add(record.id)
                snapshot.records.append(record)

        snapshot.failed = len(snapshot.errors) == len(providers)
        if snapshot.dropped:
            records_dropped_total.labels(entity=entity_type.value).inc(snapshot.dropped)
        logger.debug(
            "aggregator.source_loaded",
            entity_type=entity_type.value,
            records=len(snapshot.records),
            dropped=snapshot.dropped,
            failed_providers=len(snapshot.errors),
        )
        return snapshot

    async def _fetch_provider(
        self, provider: RecordProvider, entity_type: EntityType
    ) -> list[dict[str, Any]]:
        """One bounded provider call; every failure surfaces as ProviderUnavailable."""
        start = time.perf_counter()
        try:
            raws = await asyncio.wait_for(provider.fetch(entity_type), timeout=self._timeout)
        except asyncio.TimeoutError:
            provider_failures_total.labels(
                provider=provider.name, entity=entity_type.value, kind="timeout"
            ).inc()
            logger.warning(
                "aggregator.provider_timeout",
                provider=provider.name,
                entity_type=entity_type.value,
                timeout_seconds=self._timeout,
            )
            raise ProviderTimeout(provider.name, entity_type.value, self._timeout) from None
        except Exception as exc:
            provider_failures_total.labels(
                provider=provider.name, entity=entity_type.value, kind="error"
            ).inc()
            logger.warning(
                "aggregator.provider_failed",
                provider=provider.name,
                entity_type=entity_type.value,
                error=str(exc),
            )
            raise ProviderUnavailable(
                provider.name, entity_type.value, str(exc) or type(exc).__name__
            ) from exc
        finally:
            provider_fetch_duration_seconds.labels(
                provider=provider.name, entity=entity_type.value
            ).observe(time.perf_counter() - start)

        if not isinstance(raws, list):
            raise ProviderUnavailable(provider.name, entity_type.value, "returned a non-list payload")
        return raws

    # ── Health ──────────────────────────────────────────────────────────

    async def check_providers(self) -> dict[str, str]:
        """Fetch users (or the first routed entity type) once per provider; ``ok`` or the error."""
        checks: dict[str, str] = {}
        for provider in self._registry.all_providers():
            routed = self._registry.entity_types_for(provider)
            entity_type = EntityType.USERS if EntityType.USERS in routed else routed[0]
            try:
                await self._fetch_provider(provider, entity_type)
                checks[provider.name] = "ok"
            except ProviderUnavailable as exc:
                checks[provider.name] = f"error: {exc.reason}"
        return checks
