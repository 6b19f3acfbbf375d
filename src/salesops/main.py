"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events for the dashboard service graph, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException

from src.salesops.config import Settings, get_settings
from src.salesops.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.salesops.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.salesops.api.v1.router import router as v1_router
from src.salesops.services import DashboardServices


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: start background work on startup, release it on shutdown."""
    log = structlog.get_logger(__name__)
    services: DashboardServices = app.state.services
    configure_structlog(services.settings)

    # Initialize Sentry if DSN is configured
    if services.settings.SENTRY_DSN:
        init_sentry(
            dsn=services.settings.SENTRY_DSN,
            environment=services.settings.ENVIRONMENT.value,
        )

    await services.start()
    log.info("app.started", environment=services.settings.ENVIRONMENT.value)

    yield

    await services.close()
    log.info("app.stopped")


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Render errors in the dashboard envelope: ``{"success": false, "error": ...}``."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


def create_app(
    settings: Settings | None = None,
    services: DashboardServices | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Configuration; the cached process settings when omitted.
        services: Pre-built service graph (tests inject one over memory providers).
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Sales Ops Dashboard API",
        version="0.1.0",
        description="Unified, role-scoped sales data with real-time updates",
        lifespan=lifespan,
    )
    app.state.services = services or DashboardServices.build(settings)
    app.add_exception_handler(HTTPException, http_error_handler)

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
