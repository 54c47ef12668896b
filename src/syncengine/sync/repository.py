"""Read access to synced entity rows.

Provides EntityRepository with the session_factory callable pattern. All
methods take tenant_id as first argument for tenant-scoped queries. Writes go
through TransactionalUpserter, never through this repository.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import func, select

from src.syncengine.core.database import SessionFactory
from src.syncengine.sync.dedup import ExistingLookup
from src.syncengine.sync.models import model_for

logger = structlog.get_logger(__name__)

# Columns loaded for dedup matching; source_data is never needed there.
_LOOKUP_EXCLUDED = frozenset({"source_data", "custom_fields", "created_at", "updated_at"})


class EntityRepository:
    """Tenant-scoped reads over the normalized entity tables.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def existing_rows(
        self, tenant_id: str, entity_type: str, source: str | None = None
    ) -> list[dict[str, Any]]:
        """Stored rows as plain dicts with id, source_id and the key columns.

        Args:
            tenant_id: Tenant identifier.
            entity_type: deal, contact, account, conversation, task or document.
            source: Restrict to one source system.

        Returns:
            List of column dicts.
        """
        model = model_for(entity_type)
        columns = [c for c in model.__table__.columns if c.name not in _LOOKUP_EXCLUDED]
        stmt = select(*columns).where(model.tenant_id == tenant_id)
        if source is not None:
            stmt = stmt.where(model.source == source)

        rows: list[dict[str, Any]] = []
        async for session in self._session_factory():
            result = await session.execute(stmt)
            rows = [dict(row) for row in result.mappings().all()]
        return rows

    def lookup_for(self, source: str) -> ExistingLookup:
        """Bind ``source`` into an ExistingLookup for DedupResolver."""

        async def _lookup(tenant_id: str, entity_type: str) -> list[dict[str, Any]]:
            return await self.existing_rows(tenant_id, entity_type, source)

        return _lookup

    async def list_records(
        self,
        tenant_id: str,
        entity_type: str,
        source: str | None = None,
        limit: int | None = None,
    ) -> list[Any]:
        """Full ORM rows ordered by source_id."""
        model = model_for(entity_type)
        stmt = select(model).where(model.tenant_id == tenant_id).order_by(model.source_id)
        if source is not None:
            stmt = stmt.where(model.source == source)
        if limit is not None:
            stmt = stmt.limit(limit)

        records: list[Any] = []
        async for session in self._session_factory():
            result = await session.execute(stmt)
            records = list(result.scalars().all())
        return records

    async def count(self, tenant_id: str, entity_type: str, source: str | None = None) -> int:
        model = model_for(entity_type)
        stmt = select(func.count()).select_from(model).where(model.tenant_id == tenant_id)
        if source is not None:
            stmt = stmt.where(model.source == source)

        total = 0
        async for session in self._session_factory():
            total = (await session.execute(stmt)).scalar_one()
        return total

    async def custom_field_maps(
        self, tenant_id: str, entity_type: str, source: str | None = None
    ) -> list[dict[str, Any]]:
        """The custom_fields map of every stored row (used for drift fill rates)."""
        model = model_for(entity_type)
        stmt = select(model.custom_fields).where(model.tenant_id == tenant_id)
        if source is not None:
            stmt = stmt.where(model.source == source)

        maps: list[dict[str, Any]] = []
        async for session in self._session_factory():
            result = await session.execute(stmt)
            maps = [row or {} for row in result.scalars().all()]
        return maps
