"""Injected observer interface for sync engine events.

Components never log counts or durations to a hard-coded sink; they call a
SyncObserver. The default observer logs through structlog, and
PrometheusSyncObserver also feeds the metrics in core.monitoring. Tests pass a
RecordingObserver-style subclass to assert on what happened.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import structlog

from src.syncengine.core import monitoring

if TYPE_CHECKING:
    from src.syncengine.sync.schemas import SyncResult, TransformFailure

logger = structlog.get_logger(__name__)


class SyncObserver:
    """No-op base observer. Subclasses override the events they care about."""

    def rate_limit_wait(self, limiter: str, wait_seconds: float) -> None:
        """A rate limiter delayed an outbound call."""

    def fetch_attempt(self, url: str, attempt: int, outcome: str, status_code: int | None) -> None:
        """One outbound HTTP attempt finished with ``outcome``."""

    def retry_scheduled(self, url: str, attempt: int, delay_seconds: float, reason: str) -> None:
        """A transient failure will be retried after ``delay_seconds``."""

    def page_fetched(self, page_index: int, page_size: int, total: int) -> None:
        """A page was fetched successfully."""

    def page_failed(self, page_index: int, error: str, consecutive_errors: int) -> None:
        """A page fetch failed."""

    def transform_failures(self, label: str, failures: Sequence[TransformFailure], total: int) -> None:
        """Some records in a transform pass failed and were isolated."""

    def batch_committed(self, entity: str, batch_index: int, size: int) -> None:
        """A write batch was committed."""

    def batch_failed(self, entity: str, batch_index: int, size: int, error: str) -> None:
        """A write batch was rolled back."""

    def drift_finding(self, connector: str, action: str, field_count: int) -> None:
        """A schema drift finding was created or updated."""

    def sync_completed(self, tenant_id: str, connector: str, result: SyncResult) -> None:
        """A sync run finished (successfully or not)."""


class LoggingSyncObserver(SyncObserver):
    """Observer that emits every event as a structlog line."""

    def rate_limit_wait(self, limiter: str, wait_seconds: float) -> None:
        logger.debug("rate_limiter.waited", limiter=limiter, wait_seconds=round(wait_seconds, 3))

    def fetch_attempt(self, url: str, attempt: int, outcome: str, status_code: int | None) -> None:
        logger.debug(
            "fetch.attempt",
            url=url,
            attempt=attempt,
            outcome=outcome,
            status_code=status_code,
        )

    def retry_scheduled(self, url: str, attempt: int, delay_seconds: float, reason: str) -> None:
        logger.warning(
            "fetch.retry_scheduled",
            url=url,
            attempt=attempt,
            delay_seconds=round(delay_seconds, 3),
            reason=reason,
        )

    def page_fetched(self, page_index: int, page_size: int, total: int) -> None:
        logger.info("pagination.page_fetched", page=page_index, page_size=page_size, total=total)

    def page_failed(self, page_index: int, error: str, consecutive_errors: int) -> None:
        logger.error(
            "pagination.page_failed",
            page=page_index,
            error=error,
            consecutive_errors=consecutive_errors,
        )

    def transform_failures(self, label: str, failures: Sequence[TransformFailure], total: int) -> None:
        logger.warning(
            "transform.records_failed",
            label=label,
            failed=len(failures),
            total=total,
            record_ids=[f.record_id for f in failures[:20]],
        )

    def batch_committed(self, entity: str, batch_index: int, size: int) -> None:
        logger.info("upsert.batch_committed", entity=entity, batch=batch_index, size=size)

    def batch_failed(self, entity: str, batch_index: int, size: int, error: str) -> None:
        logger.error("upsert.batch_failed", entity=entity, batch=batch_index, size=size, error=error)

    def drift_finding(self, connector: str, action: str, field_count: int) -> None:
        logger.info("drift.finding", connector=connector, action=action, fields=field_count)

    def sync_completed(self, tenant_id: str, connector: str, result: SyncResult) -> None:
        log_method = logger.info if not result.errors else logger.warning
        log_method(
            "sync.completed",
            tenant_id=tenant_id,
            connector=connector,
            records_fetched=result.records_fetched,
            records_stored=result.records_stored,
            errors=len(result.errors),
            duration_ms=result.duration_ms,
        )


class PrometheusSyncObserver(LoggingSyncObserver):
    """Logging observer that also records Prometheus metrics."""

    def rate_limit_wait(self, limiter: str, wait_seconds: float) -> None:
        super().rate_limit_wait(limiter, wait_seconds)
        monitoring.rate_limiter_wait_seconds.labels(limiter=limiter).observe(wait_seconds)

    def fetch_attempt(self, url: str, attempt: int, outcome: str, status_code: int | None) -> None:
        super().fetch_attempt(url, attempt, outcome, status_code)
        monitoring.vendor_fetch_attempts_total.labels(outcome=outcome).inc()

    def batch_committed(self, entity: str, batch_index: int, size: int) -> None:
        super().batch_committed(entity, batch_index, size)
        monitoring.upsert_batches_total.labels(entity=entity, status="committed").inc()

    def batch_failed(self, entity: str, batch_index: int, size: int, error: str) -> None:
        super().batch_failed(entity, batch_index, size, error)
        monitoring.upsert_batches_total.labels(entity=entity, status="failed").inc()

    def drift_finding(self, connector: str, action: str, field_count: int) -> None:
        super().drift_finding(connector, action, field_count)
        monitoring.drift_findings_total.labels(connector=connector, action=action).inc()

    def sync_completed(self, tenant_id: str, connector: str, result: SyncResult) -> None:
        super().sync_completed(tenant_id, connector, result)
        status = "failed" if result.failed else ("degraded" if result.errors else "success")
        monitoring.sync_runs_total.labels(
            connector=connector, tenant_id=tenant_id, status=status
        ).inc()
        monitoring.sync_run_duration_seconds.labels(connector=connector).observe(
            result.duration_ms / 1000
        )
        monitoring.sync_records_total.labels(connector=connector, stage="fetched").inc(
            result.records_fetched
        )
        monitoring.sync_records_total.labels(connector=connector, stage="stored").inc(
            result.records_stored
        )


def resolve_observer(observer: SyncObserver | None) -> SyncObserver:
    """Return ``observer`` or the default logging observer."""
    return observer if observer is not None else _DEFAULT_OBSERVER


_DEFAULT_OBSERVER: SyncObserver = LoggingSyncObserver()


def describe(value: Any) -> str:
    """Short human-readable text for an exception or value."""
    if isinstance(value, BaseException):
        text = str(value)
        return f"{type(value).__name__}: {text}" if text else type(value).__name__
    return str(value)
