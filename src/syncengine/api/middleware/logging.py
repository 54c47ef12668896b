"""Structured logging configuration and request logging middleware.

configure_structlog() sets up JSON output in production and console output
elsewhere. Both API requests and sync runs carry their identifiers through
structlog.contextvars: the middleware binds request_id and, for tenant
routes, tenant_id; sync runs bind tenant_id, connector and run_id (see
core.context).
"""

from __future__ import annotations

import logging
import re
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.syncengine.config import Environment, get_settings

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Health check endpoints are logged at debug so they do not drown sync events
_QUIET_PATHS = frozenset({"/health", "/health/ready", "/metrics"})
_TENANT_PATH = re.compile(r"^/api/v1/tenants/(?P<tenant_id>[^/]+)")

# Libraries that log every statement or request at INFO
_NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore", "aiosqlite")


def configure_structlog() -> None:
    """Configure structlog processors based on environment."""
    settings = get_settings()

    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.ENVIRONMENT == Environment.production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with timing and binds its identifiers for the call.

    An incoming X-Request-ID is reused so callers can correlate; otherwise
    one is generated. The id is echoed on the response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        path = request.url.path
        bound: dict[str, str] = {"request_id": request_id}
        match = _TENANT_PATH.match(path)
        if match:
            bound["tenant_id"] = match.group("tenant_id")

        start_time = time.monotonic()
        with structlog.contextvars.bound_contextvars(**bound):
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "http.request_failed",
                    method=request.method,
                    path=path,
                    duration_ms=round((time.monotonic() - start_time) * 1000, 2),
                )
                raise

            response.headers[REQUEST_ID_HEADER] = request_id
            if response.status_code >= 500:
                log_method = logger.error
            elif response.status_code >= 400:
                log_method = logger.warning
            elif path in _QUIET_PATHS:
                log_method = logger.debug
            else:
                log_method = logger.info

            log_method(
                "http.request_completed",
                method=request.method,
                path=path,
                status_code=response.status_code,
                duration_ms=round((time.monotonic() - start_time) * 1000, 2),
            )
        return response
