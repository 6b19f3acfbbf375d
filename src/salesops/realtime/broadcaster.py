"""Change Broadcaster -- per-subscription recompute loops feeding SSE streams.

Every subscription owns one task. The task recomputes the subscriber's record
set through the Aggregator (so push and polling share the same cache and
results) and hands over a full snapshot, never a diff. It wakes up on its
interval timer or immediately when ``notify`` reports a mutation touching one
of its entity types.

Delivery uses a one-slot queue: a slow consumer only ever sees the latest
snapshot, stale ones are replaced instead of piling up.

A failed recompute, or a result in which every requested type failed, is
logged and skipped: the subscriber keeps its last snapshot, exactly as a
polling client keeps its last successful response, and the next tick tries again.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
from typing import Any

import structlog

from src.salesops.aggregation.aggregator import Aggregator, UnifiedResult
from src.salesops.core.monitoring import active_subscriptions, broadcast_ticks_total
from src.salesops.records.schemas import EntityType, Requester

logger = structlog.get_logger(__name__)

# Snapshot shapes
UNIFIED = "unified"
ARRAY = "array"

# Offered to a subscription queue once its task is gone; ends the stream.
_CLOSED = object()


def format_sse(payload: Any) -> str:
    """Frame ``payload`` as one text/event-stream event."""
    return f"data: {json.dumps(payload, separators=(',', ':'))}\n\n"


class Subscription:
    """One connected client's view: requester, entity types and query shape.

    ``shape`` is ``unified`` (the ``data`` object of ``/unified-data``) or
    ``array`` (the record list of a single entity type).
    """

    def __init__(
        self,
        subscription_id: int,
        requester: Requester,
        entity_types: Sequence[EntityType],
        date_range: str = "all",
        limit: int | None = None,
        offset: int = 0,
        shape: str = UNIFIED,
        interval_seconds: float = 2.0,
    ) -> None:
        if shape == ARRAY and len(entity_types) != 1:
            raise ValueError("array subscriptions need exactly one entity type")
        self.id = subscription_id
        self.requester = requester
        self.entity_types = list(entity_types)
        self.date_range = date_range
        self.limit = limit
        self.offset = offset
        self.shape = shape
        self.interval_seconds = interval_seconds
        self.queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=1)
        self.wake = asyncio.Event()
        self.task: asyncio.Task | None = None
        self.ticks = 0

    @property
    def key(self) -> tuple:
        return (self.requester.scope_key, tuple(et.value for et in self.entity_types), self.shape)

    def touches(self, entity_types: Iterable[EntityType]) -> bool:
        return any(et in self.entity_types for et in entity_types)

    def offer(self, snapshot: Any) -> None:
        """Replace any undelivered snapshot with ``snapshot``."""
        if self.queue.full():
            self.queue.get_nowait()
        self.queue.put_nowait(snapshot)

    async def snapshots(self) -> AsyncIterator[Any]:
        """Yield snapshots as they are produced, until the subscription is released."""
        while True:
            snapshot = await self.queue.get()
            if snapshot is _CLOSED:
                return
            yield snapshot

    async def events(self) -> AsyncIterator[str]:
        """Yield SSE-framed snapshots."""
        async for snapshot in self.snapshots():
            yield format_sse(snapshot)

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} key={self.key!r}>"


class ChangeBroadcaster:
    """Registry of live subscriptions and their recompute tasks.

    Args:
        aggregator: Source of snapshots.
        interval_seconds: Default recompute interval.
    """

    def __init__(self, aggregator: Aggregator, interval_seconds: float = 2.0) -> None:
        self._aggregator = aggregator
        self._interval = interval_seconds
        self._subscriptions: dict[int, Subscription] = {}
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self._closed = False

    def __len__(self) -> int:
        return len(self._subscriptions)

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    async def subscribe(
        self,
        requester: Requester,
        entity_types: Sequence[EntityType],
        date_range: str = "all",
        limit: int | None = None,
        offset: int = 0,
        shape: str = UNIFIED,
        interval_seconds: float | None = None,
    ) -> Subscription:
        """Register a subscription and start its recompute task.

        The first snapshot is produced immediately.

        Raises:
            RuntimeError: If the broadcaster has been closed.
        """
        async with self._lock:
            if self._closed:
                raise RuntimeError("broadcaster is closed")
            subscription = Subscription(
                subscription_id=next(self._ids),
                requester=requester,
                entity_types=entity_types,
                date_range=date_range,
                limit=limit,
                offset=offset,
                shape=shape,
                interval_seconds=interval_seconds or self._interval,
            )
            subscription.task = asyncio.create_task(
                self._run(subscription), name=f"broadcaster-sub-{subscription.id}"
            )
            self._subscriptions[subscription.id] = subscription
            active_subscriptions.set(len(self._subscriptions))

        logger.info(
            "broadcaster.subscribed",
            subscription_id=subscription.id,
            role=requester.role.value if requester.role else None,
            entity_types=[et.value for et in subscription.entity_types],
            shape=shape,
        )
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscription and release its task. Safe to call twice."""
        async with self._lock:
            removed = self._subscriptions.pop(subscription.id, None)
            active_subscriptions.set(len(self._subscriptions))
        if removed is None:
            return
        await self._cancel(subscription)
        logger.info("broadcaster.unsubscribed", subscription_id=subscription.id, ticks=subscription.ticks)

    def notify(self, entity_types: Iterable[EntityType]) -> int:
        """Wake every subscription touching ``entity_types``. Returns how many woke."""
        entity_types = list(entity_types)
        woken = 0
        for subscription in list(self._subscriptions.values()):
            if subscription.touches(entity_types):
                subscription.wake.set()
                woken += 1
        if woken:
            logger.debug(
                "broadcaster.notified",
                entity_types=[et.value for et in entity_types],
                woken=woken,
            )
        return woken

    async def close(self) -> None:
        """Cancel every subscription task."""
        async with self._lock:
            self._closed = True
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
            active_subscriptions.set(0)
        for subscription in subscriptions:
            await self._cancel(subscription)
        logger.info("broadcaster.closed", cancelled=len(subscriptions))

    async def snapshot(self, subscription: Subscription) -> UnifiedResult:
        """Recompute the unified result behind ``subscription``."""
        return await self._aggregator.fetch_unified(
            subscription.requester,
            subscription.entity_types,
            date_range=subscription.date_range,
            limit=subscription.limit,
            offset=subscription.offset,
            include_analytics=None if subscription.shape == UNIFIED else False,
        )

    @staticmethod
    def render(subscription: Subscription, result: UnifiedResult) -> Any:
        """Payload pushed to the client: the entity array or the unified ``data`` object."""
        if subscription.shape == ARRAY:
            return result.data.get(subscription.entity_types[0].value, [])
        return result.to_response()["data"]

    # ── Internals ───────────────────────────────────────────────────────

    async def _run(self, subscription: Subscription) -> None:
        while True:
            try:
                result = await self.snapshot(subscription)
                if result.success:
                    subscription.offer(self.render(subscription, result))
                    subscription.ticks += 1
                    broadcast_ticks_total.labels(outcome="pushed").inc()
                else:
                    # A wholly failed result never replaces the last snapshot.
                    broadcast_ticks_total.labels(outcome="failed").inc()
                    logger.warning(
                        "broadcaster.tick_failed",
                        subscription_id=subscription.id,
                        error=result.error,
                        failed_types=result.metadata.failed_types,
                    )
            except asyncio.CancelledError:
                raise
            except Exception:
                broadcast_ticks_total.labels(outcome="failed").inc()
                logger.exception("broadcaster.tick_failed", subscription_id=subscription.id)

            try:
                await asyncio.wait_for(subscription.wake.wait(), timeout=subscription.interval_seconds)
            except asyncio.TimeoutError:
                pass
            subscription.wake.clear()

    @staticmethod
    async def _cancel(subscription: Subscription) -> None:
        task = subscription.task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        subscription.offer(_CLOSED)


async def stream_subscription(
    broadcaster: ChangeBroadcaster,
    is_disconnected: Callable[[], Awaitable[bool]],
    requester: Requester,
    entity_types: Sequence[EntityType],
    **options: Any,
) -> AsyncIterator[str]:
    """SSE body for one client: subscribe, relay snapshots, always unsubscribe.

    The subscription is created lazily, when the response starts streaming, and
    released when the client disconnects or the generator is closed/cancelled.
    """
    subscription = await broadcaster.subscribe(requester, entity_types, **options)
    try:
        async for event in subscription.events():
            if await is_disconnected():
                break
            yield event
    finally:
        await broadcaster.unsubscribe(subscription)
