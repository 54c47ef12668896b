"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events for database initialization, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from src.syncengine.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.syncengine.api.v1.router import router as v1_router
from src.syncengine.config import get_settings
from src.syncengine.core.database import SessionFactory, close_db, init_db
from src.syncengine.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and Sentry on startup, close on shutdown.

    An injected session factory belongs to the caller, who creates its
    tables and disposes its engine; the settings engine is left untouched.
    """
    settings = get_settings()
    configure_structlog()
    owns_engine = app.state.session_factory is None
    if owns_engine:
        await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    logger.info("app.started", environment=settings.ENVIRONMENT.value)
    yield

    if owns_engine:
        await close_db()
    logger.info("app.stopped")


def create_app(session_factory: SessionFactory | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        session_factory: Session source for the API's stores. Defaults to the
            engine built from settings.
    """
    settings = get_settings()

    app = FastAPI(
        title="Sync Engine API",
        version="0.1.0",
        description="Multi-tenant connector synchronization engine",
        lifespan=lifespan,
    )
    app.state.session_factory = session_factory

    # Middleware is added in reverse order (last added = outermost)

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
    async def metrics() -> Response:
        return get_metrics_response()

    return app


app = create_app()
