"""structlog setup and the request logging middleware.

Every request is logged once with its dashboard requester (``userRole``,
``userId``, ``dataTypes`` from the query string), status and timing under a
request id taken from an inbound X-Request-ID or generated and echoed back.
Production renders JSON lines; other environments use the console renderer.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.salesops.config import Environment, Settings, get_settings

logger = structlog.get_logger(__name__)

QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "aiosqlite")
STREAM_MEDIA_TYPE = "text/event-stream"


def configure_structlog(settings: Settings | None = None) -> None:
    """Configure structlog once per process from ``ENVIRONMENT`` and ``LOG_LEVEL``."""
    settings = settings or get_settings()
    level = settings.LOG_LEVEL.upper()
    logging.basicConfig(format="%(message)s", level=level)
    # Client libraries log every request at INFO; keep them to warnings.
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, logging.getLevelName(level)))

    shared_processors: list = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.ENVIRONMENT == Environment.production:
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def request_context(request: Request, request_id: str) -> dict[str, str | None]:
    """Log fields identifying the request and the dashboard user behind it."""
    params = request.query_params
    return {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "user_role": params.get("userRole"),
        "user_id": params.get("userId"),
        "data_types": params.get("dataTypes"),
    }


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with requester context and timing.

    Reuses the caller's X-Request-ID when supplied so a request can be traced
    across the front end and this service. Event streams are logged when they
    open; their duration is the time to the first byte, not the connection.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        context = request_context(request, request_id)
        start_time = time.monotonic()

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "http.request_failed",
                status_code=500,
                duration_ms=round((time.monotonic() - start_time) * 1000, 2),
                **context,
            )
            raise

        response.headers["X-Request-ID"] = request_id
        duration_ms = round((time.monotonic() - start_time) * 1000, 2)

        if response.headers.get("content-type", "").startswith(STREAM_MEDIA_TYPE):
            logger.info("http.stream_opened", duration_ms=duration_ms, **context)
            return response

        if response.status_code >= 500:
            log_method = logger.error
        elif response.status_code >= 400:
            log_method = logger.warning
        else:
            log_method = logger.info
        log_method(
            "http.request_completed",
            status_code=response.status_code,
            duration_ms=duration_ms,
            **context,
        )
        return response
