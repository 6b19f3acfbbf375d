"""Unified data endpoints: the aggregated read, its SSE stream and cache stats.

``GET /unified-data`` and ``GET /unified-data/stream`` answer the same query
through the same Aggregator and Cache Store, so a client falling back from the
stream to polling sees identical data.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from src.salesops.api.deps import get_requester, get_services, parse_data_types
from src.salesops.realtime.broadcaster import UNIFIED, stream_subscription
from src.salesops.records.schemas import Requester
from src.salesops.services import DashboardServices

router = APIRouter(tags=["unified"])

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


@router.get("/unified-data")
async def get_unified_data(
    requester: Requester = Depends(get_requester),
    data_types: str | None = Query(None, alias="dataTypes"),
    date_range: str = Query("all", alias="dateRange"),
    limit: int | None = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    services: DashboardServices = Depends(get_services),
):
    """Role-scoped records for the requested data types plus derived analytics.

    Returns 200 with ``metadata.partialErrors`` when some providers failed, and
    502 with ``success: false`` when every requested data type failed.
    """
    entity_types, include_analytics = parse_data_types(data_types)
    result = await services.aggregator.fetch_unified(
        requester,
        entity_types,
        date_range=date_range,
        limit=limit,
        offset=offset,
        include_analytics=include_analytics,
    )
    return JSONResponse(status_code=200 if result.success else 502, content=result.to_response())


@router.get("/unified-data/stream")
async def stream_unified_data(
    request: Request,
    requester: Requester = Depends(get_requester),
    data_types: str | None = Query(None, alias="dataTypes"),
    date_range: str = Query("all", alias="dateRange"),
    limit: int | None = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    services: DashboardServices = Depends(get_services),
):
    """Server-Sent Events: the ``data`` object of /unified-data on every recompute."""
    entity_types, _ = parse_data_types(data_types)
    return StreamingResponse(
        stream_subscription(
            services.broadcaster,
            request.is_disconnected,
            requester,
            entity_types,
            date_range=date_range,
            limit=limit,
            offset=offset,
            shape=UNIFIED,
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/cache/stats")
async def get_cache_stats(services: DashboardServices = Depends(get_services)):
    """Cache Store counters and live subscription count."""
    stats = services.cache.stats().model_dump(by_alias=True)
    stats["subscriptions"] = len(services.broadcaster)
    return {"success": True, "data": stats}
