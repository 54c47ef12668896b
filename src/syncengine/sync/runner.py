"""Per-run sync pipeline.

SyncRunner executes one sync attempt for one (tenant, connector):

    collect pages -> transform -> resolve identities -> upsert in batches
        -> record attempt on the connection -> append sync log -> detect drift

It always returns a SyncResult. Errors are collected into the result and the
connection's status; only task cancellation propagates, after the attempt
has been recorded. A per-run timeout turns into a partial result reflecting
the batches committed before it fired.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError

from src.syncengine.config import get_settings
from src.syncengine.core.context import sync_context
from src.syncengine.core.database import SessionFactory
from src.syncengine.sync.cache import TenantTTLCache
from src.syncengine.sync.cursor import SyncCursorTracker
from src.syncengine.sync.dedup import DedupResolver
from src.syncengine.sync.drift import DEFAULT_OBJECT_TYPES, SchemaDriftDetector
from src.syncengine.sync.errors import ConfigurationError
from src.syncengine.sync.observer import SyncObserver, describe, resolve_observer
from src.syncengine.sync.pagination import PaginatedCollector
from src.syncengine.sync.repository import EntityRepository
from src.syncengine.sync.schemas import (
    ConnectionStatus,
    DedupConfig,
    NormalizedRecord,
    PageResult,
    PaginationConfig,
    StopReason,
    SyncOptions,
    SyncResult,
)
from src.syncengine.sync.transform import transform_with_capture
from src.syncengine.sync.upsert import TransactionalUpserter

logger = structlog.get_logger(__name__)

StreamFetchPage = Callable[[int, Any, datetime | None], Awaitable[PageResult]]


@dataclass
class SyncStream:
    """One object type a connector pulls from its source.

    Attributes:
        entity_type: Normalized entity type (deal, contact, ...).
        fetch_page: ``await fetch_page(page_index, cursor, since)`` -> PageResult.
        transform: ``transform(raw, tenant_id)`` -> NormalizedRecord. May raise.
        record_id: Extracts the vendor id of a raw record, for error reports.
        field_mapping: Normalized field -> source field; drives dedup strategy.
    """

    entity_type: str
    fetch_page: StreamFetchPage
    transform: Callable[[Any, str], NormalizedRecord]
    record_id: Callable[[Any], Any] | None = None
    field_mapping: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class _RunProgress:
    fetched: int = 0
    stored: int = 0
    errors: list[str] = field(default_factory=list)
    cursor: dict[str, Any] = field(default_factory=dict)
    fatal: bool = False

    def add_stored(self, count: int) -> None:
        self.stored += count


def _json_cursor(value: Any) -> Any:
    return value if isinstance(value, (str, int, float, type(None))) else str(value)


class SyncRunner:
    """Composes the sync components into one attempt.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        observer: Structured event sink shared by every component.
        dedup_cache: Caller-owned cache of dedup strategies.
        sleep: Inter-page delay coroutine. Injectable for tests.
        detect_drift: Run schema drift detection after a successful attempt.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        observer: SyncObserver | None = None,
        dedup_cache: TenantTTLCache[DedupConfig] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        detect_drift: bool = True,
    ) -> None:
        self._observer = resolve_observer(observer)
        self.tracker = SyncCursorTracker(session_factory)
        self.entities = EntityRepository(session_factory)
        self.collector = PaginatedCollector(sleep=sleep, observer=self._observer)
        self.dedup = DedupResolver(dedup_cache if dedup_cache is not None else TenantTTLCache())
        self.upserter = TransactionalUpserter(session_factory, observer=self._observer)
        self.drift = SchemaDriftDetector(session_factory, self.tracker, observer=self._observer)
        self._detect_drift = detect_drift

    async def run(
        self,
        tenant_id: str,
        connector_name: str,
        source: str,
        streams: Sequence[SyncStream],
        *,
        since: datetime | None = None,
        options: SyncOptions | None = None,
    ) -> SyncResult:
        """Run one sync attempt and record its outcome.

        Args:
            tenant_id: Tenant identifier.
            connector_name: Connection name (unique per tenant).
            source: Source system written to every record's ``source``.
            streams: Object types to pull, in order.
            since: Only fetch changes after this point (incremental sync).
            options: Pagination, batch size and timeout overrides.

        Returns:
            SyncResult. Never raises except for task cancellation.
        """
        options = options or SyncOptions()
        progress = _RunProgress()
        start = time.monotonic()

        with sync_context(tenant_id, connector_name) as ctx:
            logger.info(
                "sync.started",
                streams=[s.entity_type for s in streams],
                incremental=since is not None,
            )
            try:
                await self._run_with_timeout(
                    tenant_id, connector_name, source, streams, since, options, progress
                )
            except asyncio.CancelledError:
                progress.errors.append("sync cancelled")
                await self._finish(tenant_id, connector_name, progress, start, ctx.run_id)
                raise
            except ConfigurationError as exc:
                progress.errors.append(describe(exc))
                progress.fatal = True
            except Exception as exc:
                logger.exception("sync.unexpected_error")
                progress.errors.append(describe(exc))

            result = await self._finish(tenant_id, connector_name, progress, start, ctx.run_id)

            if self._detect_drift and not progress.fatal and progress.stored > 0:
                await self._run_drift(tenant_id, connector_name, streams)
        return result

    async def _run_with_timeout(
        self,
        tenant_id: str,
        connector_name: str,
        source: str,
        streams: Sequence[SyncStream],
        since: datetime | None,
        options: SyncOptions,
        progress: _RunProgress,
    ) -> None:
        connection = await self.tracker.get_connection(tenant_id, connector_name)
        if connection is None:
            raise ConfigurationError(f"No connection for {connector_name!r}; connect first")
        if connection.status == ConnectionStatus.DISCONNECTED.value:
            raise ConfigurationError(f"Connection {connector_name!r} is disconnected")

        pipeline = self._pipeline(tenant_id, connector_name, source, streams, since, options, progress)
        if options.timeout_seconds is None:
            await pipeline
            return
        try:
            await asyncio.wait_for(pipeline, timeout=options.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("sync.timed_out", timeout_seconds=options.timeout_seconds)
            progress.errors.append(f"sync timed out after {options.timeout_seconds}s")

    async def _pipeline(
        self,
        tenant_id: str,
        connector_name: str,
        source: str,
        streams: Sequence[SyncStream],
        since: datetime | None,
        options: SyncOptions,
        progress: _RunProgress,
    ) -> None:
        pagination = options.pagination or PaginationConfig.from_settings()
        batch_size = options.batch_size or get_settings().SYNC_BATCH_SIZE

        for stream in streams:
            if options.object_types and stream.entity_type not in options.object_types:
                continue

            async def fetch_page(page_index: int, cursor: Any, _stream: SyncStream = stream) -> PageResult:
                return await _stream.fetch_page(page_index, cursor, since)

            collected = await self.collector.collect(fetch_page, pagination)
            progress.fetched += len(collected.records)
            progress.errors.extend(f"{stream.entity_type} {e}" for e in collected.errors)
            progress.cursor[stream.entity_type] = {
                "last_cursor": _json_cursor(collected.last_cursor),
                "stop_reason": collected.stop_reason.value,
            }

            if collected.stop_reason == StopReason.FATAL_ERROR and collected.pages_fetched == 0:
                # Rejected before any data: credentials or configuration are wrong.
                progress.fatal = True
                return

            transformed = transform_with_capture(
                collected.records,
                lambda raw, _stream=stream: _stream.transform(raw, tenant_id),
                f"{connector_name} {stream.entity_type}",
                stream.record_id,
                observer=self._observer,
            )
            if transformed.failed:
                first = transformed.failed[0]
                progress.errors.append(
                    f"{stream.entity_type}: {len(transformed.failed)} record(s) failed transform "
                    f"(first: {first.error}, id={first.record_id})"
                )

            records: list[NormalizedRecord] = [
                r.model_copy(update={"source": source}) for r in transformed.succeeded
            ]
            if any(not r.source_id for r in records):
                config = self.dedup.strategy_for(tenant_id, stream.entity_type, stream.field_mapping)
                records, _ = await self.dedup.resolve_identities(
                    tenant_id,
                    stream.entity_type,
                    records,
                    config,
                    self.entities.lookup_for(source),
                )

            if not records:
                continue

            upserted = await self.upserter.upsert_batch(
                records, batch_size, on_commit=progress.add_stored
            )
            progress.errors.extend(
                f"{stream.entity_type} {failure.error}" for failure in upserted.failed_batches
            )

    async def _finish(
        self,
        tenant_id: str,
        connector_name: str,
        progress: _RunProgress,
        start: float,
        run_id: str,
    ) -> SyncResult:
        result = SyncResult(
            records_fetched=progress.fetched,
            records_stored=progress.stored,
            errors=list(progress.errors),
            duration_ms=int((time.monotonic() - start) * 1000),
            failed=progress.fatal,
        )
        error_summary = "; ".join(result.errors[:5]) if result.errors else None
        try:
            await self.tracker.record_attempt(
                tenant_id,
                connector_name,
                result.records_stored,
                error=error_summary,
                cursor={"streams": progress.cursor} if progress.cursor else None,
                fatal=progress.fatal,
            )
            await self.tracker.append_sync_log(tenant_id, connector_name, result, run_id=run_id)
        except SQLAlchemyError as exc:
            logger.exception("sync.record_attempt_failed")
            result = result.model_copy(update={"errors": [*result.errors, describe(exc)]})
        self._observer.sync_completed(tenant_id, connector_name, result)
        return result

    async def _run_drift(
        self, tenant_id: str, connector_name: str, streams: Sequence[SyncStream]
    ) -> None:
        object_types = [s.entity_type for s in streams if s.entity_type in DEFAULT_OBJECT_TYPES]
        if not object_types:
            return
        try:
            snapshot = await self.drift.capture_schema(tenant_id, object_types)
            new_fields = await self.drift.detect_new_fields(tenant_id, connector_name, snapshot)
            await self.drift.raise_finding(tenant_id, connector_name, new_fields)
        except Exception:
            logger.exception("drift.detection_failed")
