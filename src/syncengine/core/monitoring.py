"""Prometheus metrics, Sentry integration, and the /metrics response.

Provides:
- Sync engine metrics (runs, records, fetch attempts, limiter waits, batches)
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- init_sentry(): Initialize Sentry with sync-context-aware before_send callback
- get_metrics_response(): Prometheus exposition for the /metrics route
"""

from __future__ import annotations

import time

import sentry_sdk
import structlog
from prometheus_client import REGISTRY, Counter, Histogram, generate_latest
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger(__name__)

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_runs_total = Counter(
    "sync_runs_total",
    "Total connector sync runs",
    ["connector", "tenant_id", "status"],
)

sync_run_duration_seconds = Histogram(
    "sync_run_duration_seconds",
    "Connector sync run duration in seconds",
    ["connector"],
    buckets=(0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 300.0, 900.0, 1800.0),
)

sync_records_total = Counter(
    "sync_records_total",
    "Records processed by sync stage",
    ["connector", "stage"],
)

vendor_fetch_attempts_total = Counter(
    "vendor_fetch_attempts_total",
    "Outbound vendor API attempts by outcome",
    ["outcome"],
)

rate_limiter_wait_seconds = Histogram(
    "rate_limiter_wait_seconds",
    "Time spent waiting on a rate limiter before an outbound call",
    ["limiter"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0),
)

upsert_batches_total = Counter(
    "upsert_batches_total",
    "Write batches by outcome",
    ["entity", "status"],
)

drift_findings_total = Counter(
    "drift_findings_total",
    "Schema drift findings by action",
    ["connector", "action"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        endpoint = request.url.path

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

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


def _tag_sync_context(event: dict, hint: dict) -> dict:
    """Add tenant and connector of the active sync run to Sentry events."""
    from src.syncengine.core.context import get_current_sync

    try:
        ctx = get_current_sync()
    except RuntimeError:
        return event

    tags = event.setdefault("tags", {})
    tags["tenant_id"] = ctx.tenant_id
    tags["connector"] = ctx.connector_name
    tags["sync_run_id"] = ctx.run_id
    return event


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with sync-context event tagging.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=_tag_sync_context,
    )
    logger.info("sentry.initialized", environment=environment)


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
