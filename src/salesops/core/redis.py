"""Redis client construction.

The client is owned by DashboardServices (created at build, closed at shutdown)
rather than held in a module-level pool, so tests and workers never share one.
"""

from __future__ import annotations

import redis.asyncio as aioredis

from src.salesops.config import Settings


def create_redis(settings: Settings) -> aioredis.Redis:
    """Create a Redis client from ``REDIS_URL`` with decoded string responses."""
    return aioredis.from_url(settings.REDIS_URL, decode_responses=True)


async def close_redis(client: aioredis.Redis | None) -> None:
    """Close a Redis client created by create_redis."""
    if client is not None:
        await client.aclose()
