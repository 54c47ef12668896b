"""Batched, transactional upsert of normalized records.

Records are written in fixed-size chunks. Each chunk runs in one
transaction with one INSERT ... ON CONFLICT (tenant_id, source, source_id)
DO UPDATE per record and commits at the end. Any database error rolls back
the whole chunk, which is recorded as failed; later chunks still run. Chunks
are written strictly in order.

Columns listed in a model's __merge_rules__ as PRESERVE_NON_EMPTY keep their
stored value when the incoming value is null or empty.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

import structlog
from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.syncengine.config import get_settings
from src.syncengine.core.database import SessionFactory
from src.syncengine.sync.errors import ConfigurationError, PersistenceError
from src.syncengine.sync.models import EntityMixin, model_for
from src.syncengine.sync.observer import SyncObserver, describe, resolve_observer
from src.syncengine.sync.schemas import BatchFailure, MergeRule, NormalizedRecord, UpsertResult

logger = structlog.get_logger(__name__)

CONFLICT_COLUMNS = ("tenant_id", "source", "source_id")

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def build_upsert(dialect_name: str, model: type[EntityMixin], values: dict[str, Any]) -> Any:
    """Build the dialect-specific INSERT ... ON CONFLICT DO UPDATE for one row."""
    try:
        insert = _DIALECT_INSERTS[dialect_name]
    except KeyError:
        raise ConfigurationError(f"Upsert is not supported on dialect {dialect_name!r}") from None

    table = model.__table__
    stmt = insert(table).values(**values)
    set_: dict[str, Any] = {}
    for column in values:
        if column in CONFLICT_COLUMNS:
            continue
        incoming = stmt.excluded[column]
        if model.merge_rule(column) == MergeRule.PRESERVE_NON_EMPTY:
            set_[column] = func.coalesce(func.nullif(incoming, ""), table.c[column])
        else:
            set_[column] = incoming
    set_["updated_at"] = func.now()
    return stmt.on_conflict_do_update(index_elements=list(CONFLICT_COLUMNS), set_=set_)


def row_values(record: NormalizedRecord) -> dict[str, Any]:
    """Column values for ``record`` with JSON columns made JSON-safe."""
    values = record.model_dump(exclude={"custom_fields", "source_data"})
    values.update(record.model_dump(mode="json", include={"custom_fields", "source_data"}))
    return values


class TransactionalUpserter:
    """Writes normalized records in atomic chunks.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        observer: Receives batch_committed / batch_failed events.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        observer: SyncObserver | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._observer = resolve_observer(observer)

    async def upsert_batch(
        self,
        records: Sequence[NormalizedRecord],
        batch_size: int | None = None,
        *,
        on_commit: Callable[[int], None] | None = None,
    ) -> UpsertResult:
        """Upsert ``records`` in chunks of ``batch_size`` (default SYNC_BATCH_SIZE).

        ``on_commit(size)`` is called after each chunk commits, so a caller
        that gets cancelled still knows how much was written.

        Returns:
            UpsertResult with the number of records written, the number in
            rolled-back chunks, and one BatchFailure per rolled-back chunk.

        Raises:
            ValueError: A record has no source_id (resolve identities first).
        """
        batch_size = batch_size or get_settings().SYNC_BATCH_SIZE
        missing = [i for i, r in enumerate(records) if not r.source_id]
        if missing:
            raise ValueError(f"{len(missing)} record(s) have no source_id; first at index {missing[0]}")

        result = UpsertResult()
        for batch_index, start in enumerate(range(0, len(records), batch_size)):
            chunk = records[start : start + batch_size]
            entity = chunk[0].entity_type
            error = await self._write_chunk(chunk, batch_index)
            if error is None:
                result.inserted += len(chunk)
                self._observer.batch_committed(entity, batch_index, len(chunk))
                if on_commit is not None:
                    on_commit(len(chunk))
            else:
                result.failed += len(chunk)
                result.failed_batches.append(
                    BatchFailure(batch_index=batch_index, size=len(chunk), error=error)
                )
                self._observer.batch_failed(entity, batch_index, len(chunk), error)

        logger.info(
            "upsert.complete",
            inserted=result.inserted,
            failed=result.failed,
            failed_batches=len(result.failed_batches),
        )
        return result

    async def _write_chunk(self, chunk: Sequence[NormalizedRecord], batch_index: int) -> str | None:
        """Write one chunk in a single transaction. Returns error text on rollback.

        Cancellation while the transaction is open rolls it back and propagates.
        """
        error: str | None = None
        async for session in self._session_factory():
            try:
                async with session.begin():
                    await self._execute_chunk(session, chunk)
            except SQLAlchemyError as exc:
                failure = PersistenceError(
                    f"batch {batch_index} rolled back: {describe(exc)}", batch_index=batch_index
                )
                error = str(failure)
        return error

    @staticmethod
    async def _execute_chunk(session: AsyncSession, chunk: Sequence[NormalizedRecord]) -> None:
        dialect_name = session.get_bind().dialect.name
        for record in chunk:
            model = model_for(record.entity_type)
            await session.execute(build_upsert(dialect_name, model, row_values(record)))
