"""Per-connection sync position and health.

SyncCursorTracker owns the connections table and the sync log. It is the
only component that changes a connection's status:
- healthy: last attempt finished without errors
- degraded: last attempt recorded errors (partial data may have been stored)
- error: connection setup failed (credentials, configuration)
- disconnected: explicit disconnect, terminal; later attempts never revive it
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select

from src.syncengine.core.database import SessionFactory
from src.syncengine.sync.models import ConnectionModel, SyncLogModel
from src.syncengine.sync.schemas import ConnectionHealth, ConnectionStatus, SyncResult

logger = structlog.get_logger(__name__)


def _connection_stmt(tenant_id: str, connector_name: str):
    return select(ConnectionModel).where(
        ConnectionModel.tenant_id == tenant_id,
        ConnectionModel.connector_name == connector_name,
    )


class SyncCursorTracker:
    """Persists cursor data, health status and the sync log.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    # ── Connections ─────────────────────────────────────────────────────────

    async def connect(
        self, tenant_id: str, connector_name: str, credential_ref: str | None = None
    ) -> ConnectionModel:
        """Create the connection, or reactivate a disconnected one.

        Reconnecting is the only way out of ``disconnected``; it clears the
        error and keeps the stored cursor.
        """
        connection: ConnectionModel | None = None
        async for session in self._session_factory():
            result = await session.execute(_connection_stmt(tenant_id, connector_name))
            connection = result.scalar_one_or_none()
            if connection is None:
                connection = ConnectionModel(
                    tenant_id=tenant_id,
                    connector_name=connector_name,
                    credential_ref=credential_ref,
                    status=ConnectionStatus.HEALTHY.value,
                    sync_cursor={},
                )
                session.add(connection)
            else:
                connection.status = ConnectionStatus.HEALTHY.value
                connection.error_message = None
                if credential_ref is not None:
                    connection.credential_ref = credential_ref
            await session.commit()
            await session.refresh(connection)

        logger.info("connection.connected", tenant_id=tenant_id, connector=connector_name)
        return connection

    async def disconnect(self, tenant_id: str, connector_name: str) -> ConnectionModel | None:
        """Mark the connection disconnected. Returns None if it does not exist."""
        connection: ConnectionModel | None = None
        async for session in self._session_factory():
            result = await session.execute(_connection_stmt(tenant_id, connector_name))
            connection = result.scalar_one_or_none()
            if connection is not None:
                connection.status = ConnectionStatus.DISCONNECTED.value
                await session.commit()
                await session.refresh(connection)

        if connection is not None:
            logger.info("connection.disconnected", tenant_id=tenant_id, connector=connector_name)
        return connection

    async def get_connection(self, tenant_id: str, connector_name: str) -> ConnectionModel | None:
        connection: ConnectionModel | None = None
        async for session in self._session_factory():
            result = await session.execute(_connection_stmt(tenant_id, connector_name))
            connection = result.scalar_one_or_none()
        return connection

    async def list_connections(self, tenant_id: str) -> list[ConnectionModel]:
        stmt = (
            select(ConnectionModel)
            .where(ConnectionModel.tenant_id == tenant_id)
            .order_by(ConnectionModel.connector_name)
        )
        connections: list[ConnectionModel] = []
        async for session in self._session_factory():
            result = await session.execute(stmt)
            connections = list(result.scalars().all())
        return connections

    # ── Attempts ────────────────────────────────────────────────────────────

    async def record_attempt(
        self,
        tenant_id: str,
        connector_name: str,
        records_synced: int,
        error: str | None = None,
        cursor: dict[str, Any] | None = None,
        fatal: bool = False,
    ) -> ConnectionModel | None:
        """Record the outcome of one sync attempt.

        Args:
            tenant_id: Tenant identifier.
            connector_name: Connector the attempt ran for.
            records_synced: Records stored by the attempt.
            error: Error summary; sets status degraded (or error when fatal).
            cursor: Cursor data merged into sync_cursor.
            fatal: The connection itself is unusable (setup failure).

        Returns:
            The updated connection, or None when it does not exist.
        """
        now = datetime.now(timezone.utc)
        connection: ConnectionModel | None = None
        async for session in self._session_factory():
            result = await session.execute(_connection_stmt(tenant_id, connector_name))
            connection = result.scalar_one_or_none()
            if connection is None:
                logger.warning(
                    "connection.attempt_for_unknown_connection",
                    tenant_id=tenant_id,
                    connector=connector_name,
                )
                continue
            if connection.status == ConnectionStatus.DISCONNECTED.value:
                logger.info(
                    "connection.attempt_ignored_disconnected",
                    tenant_id=tenant_id,
                    connector=connector_name,
                )
                continue

            if error is None:
                status = ConnectionStatus.HEALTHY
            elif fatal:
                status = ConnectionStatus.ERROR
            else:
                status = ConnectionStatus.DEGRADED

            connection.status = status.value
            connection.error_message = error
            connection.last_sync_at = now
            connection.sync_cursor = {
                **(connection.sync_cursor or {}),
                **(cursor or {}),
                "last_sync_records": records_synced,
                "last_sync_at": now.isoformat(),
            }
            await session.commit()
            await session.refresh(connection)

            logger.info(
                "connection.attempt_recorded",
                tenant_id=tenant_id,
                connector=connector_name,
                status=status.value,
                records_synced=records_synced,
            )
        return connection

    async def merge_cursor(self, tenant_id: str, connector_name: str, data: dict[str, Any]) -> None:
        """Merge ``data`` into sync_cursor without touching status."""
        async for session in self._session_factory():
            result = await session.execute(_connection_stmt(tenant_id, connector_name))
            connection = result.scalar_one_or_none()
            if connection is None:
                continue
            connection.sync_cursor = {**(connection.sync_cursor or {}), **data}
            await session.commit()

    async def health(self, tenant_id: str, connector_name: str) -> ConnectionHealth:
        """Health summary; a missing connection reports as disconnected."""
        connection = await self.get_connection(tenant_id, connector_name)
        if connection is None:
            return ConnectionHealth(status=ConnectionStatus.DISCONNECTED)
        cursor = connection.sync_cursor or {}
        return ConnectionHealth(
            status=ConnectionStatus(connection.status),
            last_sync=connection.last_sync_at,
            records_synced=int(cursor.get("last_sync_records", 0)),
            errors=[connection.error_message] if connection.error_message else [],
        )

    # ── Sync Log ────────────────────────────────────────────────────────────

    async def append_sync_log(
        self,
        tenant_id: str,
        connector_name: str,
        result: SyncResult,
        run_id: str | None = None,
    ) -> None:
        async for session in self._session_factory():
            session.add(
                SyncLogModel(
                    tenant_id=tenant_id,
                    connector_name=connector_name,
                    run_id=run_id,
                    records_fetched=result.records_fetched,
                    records_stored=result.records_stored,
                    errors=list(result.errors),
                    duration_ms=result.duration_ms,
                    failed=result.failed,
                    created_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()

    async def list_sync_log(
        self, tenant_id: str, connector_name: str | None = None, limit: int = 50
    ) -> list[SyncLogModel]:
        """Most recent sync log entries first."""
        stmt = select(SyncLogModel).where(SyncLogModel.tenant_id == tenant_id)
        if connector_name is not None:
            stmt = stmt.where(SyncLogModel.connector_name == connector_name)
        stmt = stmt.order_by(SyncLogModel.created_at.desc()).limit(limit)

        entries: list[SyncLogModel] = []
        async for session in self._session_factory():
            result = await session.execute(stmt)
            entries = list(result.scalars().all())
        return entries
