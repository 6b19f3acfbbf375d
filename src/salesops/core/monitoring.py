"""Prometheus metrics and Sentry integration.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- Cache, provider, normalization and subscription metrics used by the core
- init_sentry(): Initialize Sentry with requester-aware event tagging
- get_metrics_response(): Prometheus exposition for the /metrics route
"""

from __future__ import annotations

import time

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "salesops_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "salesops_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Cache Metrics ────────────────────────────────────────────────────────────

cache_hits_total = Counter(
    "salesops_cache_hits_total",
    "Cache lookups answered from a live entry",
    ["entity"],
)

cache_misses_total = Counter(
    "salesops_cache_misses_total",
    "Cache lookups that started a computation",
    ["entity"],
)

cache_coalesced_total = Counter(
    "salesops_cache_coalesced_total",
    "Cache lookups that joined an in-flight computation",
    ["entity"],
)

cache_evictions_total = Counter(
    "salesops_cache_evictions_total",
    "Cache entries removed by expiry, capacity or invalidation",
    ["reason"],
)

# ── Provider & Normalization Metrics ─────────────────────────────────────────

provider_fetch_duration_seconds = Histogram(
    "salesops_provider_fetch_duration_seconds",
    "Record Provider fetch duration in seconds",
    ["provider", "entity"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0),
)

provider_failures_total = Counter(
    "salesops_provider_failures_total",
    "Record Provider fetches that failed or timed out",
    ["provider", "entity", "kind"],
)

records_dropped_total = Counter(
    "salesops_records_dropped_total",
    "Raw records excluded by normalization",
    ["entity"],
)

# ── Real-time Metrics ────────────────────────────────────────────────────────

active_subscriptions = Gauge(
    "salesops_active_subscriptions",
    "Number of live Change Broadcaster subscriptions",
)

broadcast_ticks_total = Counter(
    "salesops_broadcast_ticks_total",
    "Subscription recomputations by outcome",
    ["outcome"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────

UNMATCHED_ENDPOINT = "unmatched"


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    The endpoint label is the matched route pattern (``/callbacks/{callback_id}``);
    requests matching no route share the ``unmatched`` label. Skips /metrics.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", UNMATCHED_ENDPOINT)

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with requester-aware event tagging.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Tag events with the requester role taken from the query string."""
        query = event.get("request", {}).get("query_string") or ""
        if isinstance(query, str) and "userRole=" in query:
            role = query.split("userRole=", 1)[1].split("&", 1)[0]
            event.setdefault("tags", {})["user_role"] = role
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
