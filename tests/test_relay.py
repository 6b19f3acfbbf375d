"""Tests for cross-process cache invalidation over Redis pub/sub.

Redis is replaced with AsyncMock/MagicMock doubles; no server is needed.
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.salesops.aggregation.cache import CacheStore
from src.salesops.realtime.relay import CacheInvalidationRelay
from src.salesops.records.schemas import EntityType

CHANNEL = "salesops:invalidate"
WAIT = 2.0


@pytest.fixture
def cache() -> CacheStore:
    store = CacheStore()
    store.set("deals:source", ["d1"], ttl_seconds=60)
    store.set("deals:manager:u1::all:100:0", ["d1"], ttl_seconds=60)
    store.set("targets:source", ["t1"], ttl_seconds=60)
    return store


@pytest.fixture
def broadcaster() -> MagicMock:
    return MagicMock()


@pytest.fixture
def redis() -> MagicMock:
    client = MagicMock()
    client.publish = AsyncMock(return_value=1)
    return client


@pytest.fixture
def relay(redis, cache, broadcaster) -> CacheInvalidationRelay:
    return CacheInvalidationRelay(redis, CHANNEL, cache, broadcaster, origin="worker-a")


class TestPublish:
    @pytest.mark.asyncio
    async def test_publish_sends_origin_and_types(self, relay, redis):
        await relay.publish([EntityType.DEALS, EntityType.TARGETS])

        channel, payload = redis.publish.await_args.args
        assert channel == CHANNEL
        assert json.loads(payload) == {"origin": "worker-a", "entityTypes": ["deals", "targets"]}

    @pytest.mark.asyncio
    async def test_publish_failure_is_swallowed(self, relay, redis):
        redis.publish.side_effect = ConnectionError("redis down")
        await relay.publish([EntityType.DEALS])


class TestApply:
    def test_remote_message_invalidates_and_wakes(self, relay, cache, broadcaster):
        applied = relay.apply(json.dumps({"origin": "worker-b", "entityTypes": ["deals"]}))

        assert applied == [EntityType.DEALS]
        assert "deals:source" not in cache
        assert "deals:manager:u1::all:100:0" not in cache
        assert "targets:source" in cache
        broadcaster.notify.assert_called_once_with([EntityType.DEALS])

    def test_own_messages_are_ignored(self, relay, cache, broadcaster):
        assert relay.apply(json.dumps({"origin": "worker-a", "entityTypes": ["deals"]})) == []
        assert "deals:source" in cache
        broadcaster.notify.assert_not_called()

    @pytest.mark.parametrize(
        "raw",
        ["not json", json.dumps(["deals"]), json.dumps({"origin": "b", "entityTypes": ["bogus"]})],
    )
    def test_malformed_messages_are_skipped(self, relay, cache, raw):
        assert relay.apply(raw) == []
        assert len(cache) == 3


def make_pubsub(messages) -> MagicMock:
    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock()
    pubsub.unsubscribe = AsyncMock()
    pubsub.aclose = AsyncMock()
    pubsub.listen = MagicMock(return_value=messages)
    return pubsub


async def wait_until_called(mock: MagicMock) -> None:
    async with asyncio.timeout(WAIT):
        while not mock.called:
            await asyncio.sleep(0.01)


async def stop(task: asyncio.Task) -> None:
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


class TestListen:
    @pytest.mark.asyncio
    async def test_listen_applies_messages_and_cleans_up(self, relay, redis, cache, broadcaster):
        async def messages():
            yield {"type": "message", "data": json.dumps({"origin": "b", "entityTypes": ["targets"]})}
            yield {"type": "pmessage", "data": "ignored"}
            await asyncio.Event().wait()

        pubsub = make_pubsub(messages())
        redis.pubsub = MagicMock(return_value=pubsub)

        task = asyncio.create_task(relay.listen())
        await wait_until_called(broadcaster.notify)
        await stop(task)

        pubsub.subscribe.assert_awaited_once_with(CHANNEL)
        pubsub.unsubscribe.assert_awaited_once_with(CHANNEL)
        pubsub.aclose.assert_awaited_once()
        assert "targets:source" not in cache
        broadcaster.notify.assert_called_once_with([EntityType.TARGETS])

    @pytest.mark.asyncio
    async def test_resubscribes_after_connection_loss(self, redis, cache, broadcaster):
        async def dropped():
            raise RedisConnectionError("Connection reset by peer")
            yield  # pragma: no cover

        async def restored():
            yield {"type": "message", "data": json.dumps({"origin": "b", "entityTypes": ["deals"]})}
            await asyncio.Event().wait()

        first, second = make_pubsub(dropped()), make_pubsub(restored())
        redis.pubsub = MagicMock(side_effect=[first, second])
        relay = CacheInvalidationRelay(
            redis, CHANNEL, cache, broadcaster, origin="worker-a", reconnect_delays=(0,)
        )

        task = asyncio.create_task(relay.listen())
        await wait_until_called(broadcaster.notify)

        assert not task.done()
        first.aclose.assert_awaited_once()
        second.subscribe.assert_awaited_once_with(CHANNEL)
        assert relay.failures == 0
        assert "deals:source" not in cache
        await stop(task)

    @pytest.mark.asyncio
    async def test_failed_subscribe_backs_off_and_retries(self, redis, cache, broadcaster):
        async def restored():
            await asyncio.Event().wait()
            yield {}  # pragma: no cover

        broken, healthy = make_pubsub(restored()), make_pubsub(restored())
        broken.subscribe.side_effect = RedisConnectionError("Connection refused")
        redis.pubsub = MagicMock(side_effect=[broken, broken, healthy])
        relay = CacheInvalidationRelay(
            redis, CHANNEL, cache, broadcaster, reconnect_delays=(0, 0.01)
        )

        task = asyncio.create_task(relay.listen())
        await wait_until_called(healthy.subscribe)

        assert redis.pubsub.call_count == 3
        assert relay.failures == 0
        await stop(task)
