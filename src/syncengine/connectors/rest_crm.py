"""CRM REST connector -- deals, contacts and accounts over a cursor-paged JSON API.

Objects are listed from ``/v1/objects/{plural}`` with ``limit``/``after``
paging. Each object is ``{"id": ..., "properties": {...}}``; the next cursor
is at ``paging.next.after``. Mapped properties become typed columns, the rest
land in custom_fields.

All calls go through RetryingFetcher and the ``crm_rest`` rate limit preset.
"""

from __future__ import annotations

import asyncio
import hashlib
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import datetime
from typing import Any

import structlog
from pydantic import Field

from src.syncengine.connectors.base import PaginatedSourceConnector
from src.syncengine.connectors.field_mapping import (
    CRM_PROPERTY_MAP,
    dedup_field_mapping,
    from_source_properties,
)
from src.syncengine.core.database import SessionFactory
from src.syncengine.sync.errors import ConfigurationError, PermanentClientError, TransformError
from src.syncengine.sync.fetcher import RetryingFetcher
from src.syncengine.sync.observer import SyncObserver
from src.syncengine.sync.rate_limiter import RateLimiter
from src.syncengine.sync.runner import SyncStream
from src.syncengine.sync.schemas import RECORD_TYPES, NormalizedRecord, PageResult, RawRecord

logger = structlog.get_logger(__name__)

OBJECT_PATHS = {
    "deal": "/v1/objects/deals",
    "contact": "/v1/objects/contacts",
    "account": "/v1/objects/companies",
}


class CrmObject(RawRecord):
    """One object as returned by the list endpoint."""

    id: str | int
    properties: dict[str, Any] = Field(default_factory=dict)


class RestCRMConnector(PaginatedSourceConnector):
    """Syncs deals, contacts and accounts from a CRM REST API.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        base_url: API root, e.g. ``https://api.crm.example``.
        access_token: Bearer token used for every request.
        fetcher: Pre-built fetcher (tests pass one over httpx.MockTransport).
        limiter: Rate limiter; defaults to the ``crm_rest`` preset.
        page_size: Objects requested per page.
    """

    name = "crm_rest"
    source = "crm"

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        base_url: str = "",
        access_token: str | None = None,
        fetcher: RetryingFetcher | None = None,
        limiter: RateLimiter | None = None,
        page_size: int = 100,
        object_types: Sequence[str] = ("deal", "contact", "account"),
        observer: SyncObserver | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        limiter = limiter or RateLimiter.from_preset("crm_rest", observer=observer)
        super().__init__(session_factory, limiter=limiter, observer=observer, sleep=sleep)
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else {}
        self._fetcher = fetcher or RetryingFetcher(
            base_url=base_url, headers=headers, limiter=limiter, observer=observer, sleep=sleep
        )
        self._page_size = page_size
        self._object_types = tuple(object_types)

    async def validate_credentials(self, credentials: Mapping[str, Any]) -> str:
        token = credentials.get("access_token")
        if not token:
            raise ConfigurationError("CRM connector requires an access_token")
        try:
            await self._fetcher.fetch(
                "/v1/account-info", {"headers": {"Authorization": f"Bearer {token}"}}
            )
        except PermanentClientError as exc:
            raise ConfigurationError(f"CRM rejected credentials (HTTP {exc.status_code})") from exc
        return credentials.get("credential_ref") or "token:" + hashlib.sha256(
            str(token).encode()
        ).hexdigest()[:16]

    def streams(self) -> Sequence[SyncStream]:
        return [self._stream(entity_type) for entity_type in self._object_types]

    def _stream(self, entity_type: str) -> SyncStream:
        property_map = CRM_PROPERTY_MAP[entity_type]
        path = OBJECT_PATHS[entity_type]

        async def fetch_page(page_index: int, cursor: Any, since: datetime | None) -> PageResult:
            params: dict[str, Any] = {"limit": self._page_size}
            if cursor is not None:
                params["after"] = cursor
            if since is not None:
                params["updated_after"] = since.isoformat()
            body = await self._fetcher.fetch_json(path, {"params": params})
            next_cursor = ((body.get("paging") or {}).get("next") or {}).get("after")
            return PageResult(records=body.get("results") or [], next_cursor=next_cursor)

        def transform(raw: Any, tenant_id: str) -> NormalizedRecord:
            obj = CrmObject.model_validate(raw)
            if obj.id in ("", None):
                raise TransformError("object has no id")
            values, custom_fields = from_source_properties(obj.properties, property_map)
            if entity_type == "contact":
                parts = [values.get("first_name"), values.get("last_name")]
                values["full_name"] = " ".join(p for p in parts if p) or None
            return RECORD_TYPES[entity_type](
                tenant_id=tenant_id,
                source=self.source,
                source_id=str(obj.id),
                custom_fields=custom_fields,
                source_data=obj.model_dump(mode="json"),
                **values,
            )

        return SyncStream(
            entity_type=entity_type,
            fetch_page=fetch_page,
            transform=transform,
            record_id=lambda raw: raw.get("id") if isinstance(raw, Mapping) else None,
            field_mapping=dedup_field_mapping(property_map),
        )

    async def aclose(self) -> None:
        await self._fetcher.aclose()
