"""DashboardServices -- explicitly constructed service graph with a lifecycle.

    services = DashboardServices.build(settings)
    await services.start()     # cache sweeper, relay listener
    ...
    await services.close()     # subscriptions, background tasks, providers, redis

The FastAPI app carries one instance on ``app.state.services``. Nothing here is
a module-level singleton, so every test builds its own isolated graph.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime

import redis.asyncio as aioredis
import structlog

from src.salesops.aggregation.aggregator import Aggregator, utc_now
from src.salesops.aggregation.cache import CacheStore
from src.salesops.config import Settings, get_settings
from src.salesops.core.redis import close_redis, create_redis
from src.salesops.providers.base import ProviderRegistry, RecordProvider
from src.salesops.providers.document import DocumentRecordProvider
from src.salesops.providers.legacy_csv import LegacyCsvProvider
from src.salesops.providers.memory import MemoryRecordProvider
from src.salesops.providers.sql import SqlRecordProvider
from src.salesops.realtime.broadcaster import ChangeBroadcaster
from src.salesops.realtime.relay import CacheInvalidationRelay
from src.salesops.records.service import RecordService
from src.salesops.targets.engine import TargetProgressEngine

logger = structlog.get_logger(__name__)


def build_providers(settings: Settings) -> dict[str, RecordProvider]:
    """Instantiate every Record Provider the settings configure, keyed by name."""
    providers: dict[str, RecordProvider] = {"memory": MemoryRecordProvider()}
    if settings.SQL_DATABASE_URL:
        providers["sql"] = SqlRecordProvider.from_url(settings.SQL_DATABASE_URL)
    if settings.DOCUMENT_STORE_URL:
        providers["document"] = DocumentRecordProvider(
            base_url=settings.DOCUMENT_STORE_URL,
            token=settings.DOCUMENT_STORE_TOKEN,
            max_retries=settings.PROVIDER_MAX_RETRIES,
        )
    if settings.LEGACY_CSV_DIR:
        providers["legacy_csv"] = LegacyCsvProvider(settings.LEGACY_CSV_DIR)
    return providers


class DashboardServices:
    """Owns the Cache Store, Aggregator, Change Broadcaster and Record Service."""

    def __init__(
        self,
        settings: Settings,
        registry: ProviderRegistry,
        cache: CacheStore,
        aggregator: Aggregator,
        broadcaster: ChangeBroadcaster,
        target_engine: TargetProgressEngine,
        records: RecordService,
        redis: aioredis.Redis | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.cache = cache
        self.aggregator = aggregator
        self.broadcaster = broadcaster
        self.target_engine = target_engine
        self.records = records
        self.redis = redis
        self._tasks: list[asyncio.Task] = []
        self.started = False

    @classmethod
    def build(
        cls,
        settings: Settings | None = None,
        registry: ProviderRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> DashboardServices:
        """Wire the service graph.

        Args:
            settings: Configuration; the cached process settings when omitted.
            registry: Provider routing; built from ENTITY_SOURCES when omitted.
            clock: Wall-clock source shared by date windows, targets and defaults.
        """
        settings = settings or get_settings()
        clock = clock or utc_now
        registry = registry or ProviderRegistry.from_settings(settings, build_providers(settings))

        cache = CacheStore(max_keys=settings.CACHE_MAX_KEYS)
        aggregator = Aggregator(registry, cache, settings=settings, clock=clock)
        broadcaster = ChangeBroadcaster(aggregator, interval_seconds=settings.BROADCAST_INTERVAL_SECONDS)
        target_engine = TargetProgressEngine(aggregator, registry, clock=clock)

        redis = None
        relay = None
        if settings.CACHE_INVALIDATION_CHANNEL:
            redis = create_redis(settings)
            relay = CacheInvalidationRelay(
                redis, settings.CACHE_INVALIDATION_CHANNEL, cache, broadcaster
            )

        records = RecordService(
            aggregator,
            registry,
            broadcaster,
            target_engine,
            relay=relay,
            clock=clock,
        )
        return cls(
            settings=settings,
            registry=registry,
            cache=cache,
            aggregator=aggregator,
            broadcaster=broadcaster,
            target_engine=target_engine,
            records=records,
            redis=redis,
        )

    async def start(self) -> None:
        """Launch background tasks. Idempotent."""
        if self.started:
            return
        self.started = True
        self._tasks.append(
            asyncio.create_task(
                self.cache.run_sweeper(self.settings.CACHE_SWEEP_INTERVAL_SECONDS),
                name="cache_sweeper",
            )
        )
        relay = self.records.relay
        if relay is not None:
            self._tasks.append(asyncio.create_task(relay.listen(), name="cache_invalidation_relay"))
        logger.info(
            "services.started",
            background_tasks=len(self._tasks),
            providers=[p.name for p in self.registry.all_providers()],
        )

    async def close(self) -> None:
        """Cancel subscriptions and background tasks, release providers and Redis."""
        await self.broadcaster.close()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.warning("services.task_failed", task=task.get_name(), exc_info=True)
        self._tasks.clear()
        self.cache.clear()
        await self.registry.close()
        await close_redis(self.redis)
        self.started = False
        logger.info("services.closed")
