"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready). Readiness checks
every configured Record Provider with one bounded fetch and reports 503 only
when none of them answers; a partially degraded backend still serves traffic
under partial-failure semantics.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from src.salesops.api.deps import get_services
from src.salesops.services import DashboardServices

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(services: DashboardServices = Depends(get_services)):
    """Basic liveness check. No external dependencies are checked."""
    return {"status": "ok", "environment": services.settings.ENVIRONMENT.value}


@router.get("/health/ready")
async def readiness_check(services: DashboardServices = Depends(get_services)):
    """Readiness check: one bounded fetch per configured provider."""
    checks = await services.aggregator.check_providers()
    healthy = [name for name, result in checks.items() if result == "ok"]
    ready = bool(healthy)

    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if len(healthy) == len(checks) else ("degraded" if ready else "unavailable"),
            "checks": checks,
            "subscriptions": len(services.broadcaster),
        },
    )
