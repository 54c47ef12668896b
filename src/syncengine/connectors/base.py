"""Source connector abstract base class -- the contract every connector implements.

Every source (CRM, call recording, file storage, project management) implements
SourceConnector. PaginatedSourceConnector implements the sync operations on
top of SyncRunner, so a concrete connector only describes its streams: how to
fetch one page and how to transform one raw record.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import datetime
from typing import Any, ClassVar

import structlog

from src.syncengine.core.database import SessionFactory
from src.syncengine.sync.errors import SyncError
from src.syncengine.sync.models import ConnectionModel
from src.syncengine.sync.observer import SyncObserver, describe
from src.syncengine.sync.rate_limiter import RateLimiter
from src.syncengine.sync.runner import SyncRunner, SyncStream
from src.syncengine.sync.schemas import ConnectionHealth, SyncOptions, SyncResult

logger = structlog.get_logger(__name__)


class SourceConnector(ABC):
    """Abstract interface for a source connector.

    Methods:
        connect: Validate credentials and create (or reactivate) the connection.
        initial_sync: Full sync of every stream.
        incremental_sync: Sync changes since a point in time.
        health: Status, last sync, records synced, errors, rate limit usage.
    """

    name: ClassVar[str]
    source: ClassVar[str]

    @abstractmethod
    async def connect(self, tenant_id: str, credentials: Mapping[str, Any]) -> ConnectionModel:
        """Validate credentials and persist the connection."""
        ...

    @abstractmethod
    async def initial_sync(
        self, connection: ConnectionModel, tenant_id: str, options: SyncOptions | None = None
    ) -> SyncResult:
        """Full sync of every stream."""
        ...

    @abstractmethod
    async def incremental_sync(
        self, connection: ConnectionModel, tenant_id: str, since: datetime
    ) -> SyncResult:
        """Sync records changed after ``since``."""
        ...

    @abstractmethod
    async def health(self, tenant_id: str) -> ConnectionHealth:
        """Current health of this connector for ``tenant_id``."""
        ...


class PaginatedSourceConnector(SourceConnector):
    """SourceConnector whose sync operations run through SyncRunner.

    Subclasses implement ``validate_credentials`` and ``streams``.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        limiter: Vendor rate limiter, reported in health().
        observer: Structured event sink.
        sleep: Inter-page delay coroutine. Injectable for tests.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        limiter: RateLimiter | None = None,
        observer: SyncObserver | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.limiter = limiter
        self.runner = SyncRunner(session_factory, observer=observer, sleep=sleep)

    @abstractmethod
    async def validate_credentials(self, credentials: Mapping[str, Any]) -> str:
        """Check ``credentials`` and return an opaque credential reference.

        Raises:
            ConfigurationError: Credentials are missing or rejected.
            TransientNetworkError: The vendor could not be reached after retries.
        """
        ...

    @abstractmethod
    def streams(self) -> Sequence[SyncStream]:
        """Object types this connector syncs, in order."""
        ...

    async def connect(self, tenant_id: str, credentials: Mapping[str, Any]) -> ConnectionModel:
        """Validate credentials and persist the connection.

        A rejected credential, or a vendor that stays unreachable through
        every retry, still leaves a connection row in status ``error`` with
        the reason, so health checks can report it.
        """
        tracker = self.runner.tracker
        try:
            credential_ref = await self.validate_credentials(credentials)
        except SyncError as exc:
            connection = await tracker.connect(tenant_id, self.name)
            updated = await tracker.record_attempt(
                tenant_id, self.name, 0, error=describe(exc), fatal=True
            )
            logger.warning("connector.connect_failed", connector=self.name, error=describe(exc))
            return updated or connection
        return await tracker.connect(tenant_id, self.name, credential_ref)

    async def initial_sync(
        self, connection: ConnectionModel, tenant_id: str, options: SyncOptions | None = None
    ) -> SyncResult:
        return await self.runner.run(
            tenant_id, connection.connector_name, self.source, self.streams(), options=options
        )

    async def incremental_sync(
        self, connection: ConnectionModel, tenant_id: str, since: datetime
    ) -> SyncResult:
        return await self.runner.run(
            tenant_id, connection.connector_name, self.source, self.streams(), since=since
        )

    async def health(self, tenant_id: str) -> ConnectionHealth:
        health = await self.runner.tracker.health(tenant_id, self.name)
        if self.limiter is not None:
            health = health.model_copy(update={"rate_limit_status": self.limiter.status()})
        return health
