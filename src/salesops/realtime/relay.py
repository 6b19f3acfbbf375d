"""Cross-process cache invalidation over Redis pub/sub.

Each worker process keeps its own Cache Store and Change Broadcaster. After a
local mutation the worker publishes the touched entity types; every other
worker drops its cached views of those types and wakes its subscribers.

Message payload::

    {"origin": "<worker id>", "entityTypes": ["deals", "targets"]}

Messages carrying this worker's own origin are ignored (already handled
locally). Malformed messages are logged and skipped.

A lost Redis connection never ends the listener: it logs ``relay.disconnected``,
waits (1s, 2s, 5s, 10s, then every 30s) and subscribes again. The delay resets
once a subscription succeeds.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Iterable, Sequence

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from src.salesops.aggregation.cache import CacheStore
from src.salesops.errors import UnknownEntityTypeError
from src.salesops.realtime.broadcaster import ChangeBroadcaster
from src.salesops.records.schemas import EntityType

logger = structlog.get_logger(__name__)

RECONNECT_DELAYS: tuple[float, ...] = (1, 2, 5, 10, 30)


class CacheInvalidationRelay:
    """Publishes local invalidations and applies remote ones.

    Args:
        redis: Async Redis client (decoded responses).
        channel: Pub/sub channel name.
        cache: This worker's Cache Store.
        broadcaster: This worker's Change Broadcaster.
        origin: Worker id; random when omitted.
        reconnect_delays: Seconds to wait before each resubscribe attempt; the
            last value repeats.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        channel: str,
        cache: CacheStore,
        broadcaster: ChangeBroadcaster,
        origin: str | None = None,
        reconnect_delays: Sequence[float] = RECONNECT_DELAYS,
    ) -> None:
        self._redis = redis
        self._channel = channel
        self._cache = cache
        self._broadcaster = broadcaster
        self.origin = origin or uuid.uuid4().hex
        self._reconnect_delays = tuple(reconnect_delays) or (0,)
        self.failures = 0

    async def publish(self, entity_types: Iterable[EntityType]) -> None:
        """Announce a local mutation. Failures are logged, never raised to the writer."""
        payload = json.dumps(
            {"origin": self.origin, "entityTypes": [et.value for et in entity_types]}
        )
        try:
            await self._redis.publish(self._channel, payload)
        except Exception:
            logger.warning("relay.publish_failed", channel=self._channel, exc_info=True)

    def apply(self, raw: str | bytes) -> list[EntityType]:
        """Apply one pub/sub message. Returns the entity types invalidated."""
        try:
            message = json.loads(raw)
            if message.get("origin") == self.origin:
                return []
            entity_types = EntityType.parse_list(message.get("entityTypes") or [])
        except (ValueError, TypeError, AttributeError, UnknownEntityTypeError):
            logger.warning("relay.malformed_message", channel=self._channel, raw=str(raw)[:200])
            return []

        for entity_type in entity_types:
            self._cache.invalidate(f"{entity_type.value}:")
        self._broadcaster.notify(entity_types)
        logger.debug("relay.applied", entity_types=[et.value for et in entity_types])
        return entity_types

    async def listen(self) -> None:
        """Consume the channel until cancelled, resubscribing after connection loss."""
        while True:
            try:
                await self._consume()
                reason = "stream ended"
            except (RedisError, OSError) as exc:
                reason = str(exc) or type(exc).__name__

            delay = self._reconnect_delays[min(self.failures, len(self._reconnect_delays) - 1)]
            self.failures += 1
            logger.warning(
                "relay.disconnected",
                channel=self._channel,
                error=reason,
                attempt=self.failures,
                retry_in_seconds=delay,
            )
            await asyncio.sleep(delay)

    async def _consume(self) -> None:
        pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(self._channel)
            self.failures = 0
            logger.info("relay.listening", channel=self._channel, origin=self.origin)
            async for message in pubsub.listen():
                if message.get("type") == "message":
                    self.apply(message.get("data"))
        finally:
            try:
                await pubsub.unsubscribe(self._channel)
                await pubsub.aclose()
            except (RedisError, OSError):
                logger.debug("relay.cleanup_failed", channel=self._channel, exc_info=True)
