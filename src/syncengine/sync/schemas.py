"""Pydantic schemas for the connector sync engine.

Defines all structured types shared by the sync components:
- Enums: ConnectionStatus, DedupStrategy, StopReason, MergeRule
- Config models: RateLimitConfig, RetryPolicy, PaginationConfig, SyncOptions
- Pagination/transform results: PageResult, CollectResult, TransformFailure, TransformResult
- Dedup: DedupConfig, DedupMatch
- Records: RawRecord, NormalizedRecord and the six entity records
- Drift: SchemaSnapshot, NewFieldEntry
- Outcomes: UpsertResult, BatchFailure, SyncResult, ConnectionHealth
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field

from src.syncengine.config import Settings, get_settings


# ── Enums ───────────────────────────────────────────────────────────────────


class ConnectionStatus(str, Enum):
    """Health of a tenant's connection to one source."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class DedupStrategy(str, Enum):
    """How records without a trusted identity are matched to stored rows."""

    EXTERNAL_ID = "external_id"
    COMPOSITE = "composite"
    NONE = "none"


class StopReason(str, Enum):
    """Why a paginated collection ended."""

    EXHAUSTED = "exhausted"
    MAX_PAGES = "max_pages"
    ERROR_LIMIT = "error_limit"
    FATAL_ERROR = "fatal_error"


class MergeRule(str, Enum):
    """Per-column rule applied when an upsert hits an existing row."""

    OVERWRITE = "overwrite"
    PRESERVE_NON_EMPTY = "preserve_non_empty"


# ── Config Models ───────────────────────────────────────────────────────────


class RateLimitConfig(BaseModel):
    """Sliding-window limits for one vendor API."""

    max_requests: int = Field(gt=0)
    window_ms: int = Field(gt=0)
    min_delay_ms: int = Field(default=0, ge=0)
    name: str = "default"


class RetryPolicy(BaseModel):
    """Backoff policy for one outbound HTTP call.

    Delay before retry n (1-based) is base_delay_ms * backoff_factor^(n-1),
    capped at max_delay_ms, unless the vendor sent Retry-After.
    """

    max_attempts: int = Field(default=3, ge=1)
    base_delay_ms: int = Field(default=1000, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    max_delay_ms: int = Field(default=30_000, ge=0)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> RetryPolicy:
        settings = settings or get_settings()
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay_ms=settings.RETRY_BASE_DELAY_MS,
            backoff_factor=settings.RETRY_BACKOFF_FACTOR,
            max_delay_ms=settings.RETRY_MAX_DELAY_MS,
        )


class PaginationConfig(BaseModel):
    """Bounds for walking a paginated vendor endpoint.

    on_progress is called as on_progress(total_records, pages_fetched) after
    every successful page.
    """

    max_pages: int = Field(default=20, ge=1)
    page_delay_ms: int = Field(default=200, ge=0)
    consecutive_error_limit: int = Field(default=3, ge=1)
    on_progress: Callable[[int, int], None] | None = Field(default=None, exclude=True)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> PaginationConfig:
        settings = settings or get_settings()
        return cls(
            max_pages=settings.SYNC_MAX_PAGES,
            page_delay_ms=settings.SYNC_PAGE_DELAY_MS,
            consecutive_error_limit=settings.SYNC_CONSECUTIVE_ERROR_LIMIT,
        )


class SyncOptions(BaseModel):
    """Per-invocation overrides for a connector sync."""

    pagination: PaginationConfig | None = None
    batch_size: int | None = Field(default=None, ge=1)
    timeout_seconds: float | None = Field(default=None, gt=0)
    object_types: list[str] | None = None


# ── Pagination & Transform ──────────────────────────────────────────────────


class PageResult(BaseModel):
    """One page returned by a connector's fetch_page function.

    next_cursor=None means there are no more pages.
    """

    records: list[Any] = Field(default_factory=list)
    next_cursor: Any = None


class CollectResult(BaseModel):
    """Everything accumulated by a paginated walk, including partial progress."""

    records: list[Any] = Field(default_factory=list)
    pages_fetched: int = 0
    errors: list[str] = Field(default_factory=list)
    stop_reason: StopReason = StopReason.EXHAUSTED
    last_cursor: Any = None

    @property
    def complete(self) -> bool:
        return self.stop_reason in (StopReason.EXHAUSTED, StopReason.MAX_PAGES) and not self.errors


class TransformFailure(BaseModel):
    """One raw record that failed to transform."""

    record: Any
    error: str
    record_id: str | None = None


class TransformResult(BaseModel):
    """Outcome of transforming a batch of raw records item by item."""

    succeeded: list[Any] = Field(default_factory=list)
    failed: list[TransformFailure] = Field(default_factory=list)
    total_attempted: int = 0

    @property
    def success_rate(self) -> float:
        """Percentage of records transformed successfully (100 when empty)."""
        if self.total_attempted == 0:
            return 100.0
        return len(self.succeeded) / self.total_attempted * 100

    def is_acceptable(self, threshold: float = 95.0) -> bool:
        return self.success_rate >= threshold


# ── Dedup ───────────────────────────────────────────────────────────────────


class DedupConfig(BaseModel):
    """Dedup strategy chosen for one (tenant, entity type, field mapping)."""

    model_config = ConfigDict(frozen=True)

    strategy: DedupStrategy
    key_fields: tuple[str, ...] = ()
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    warning: str | None = None


class DedupMatch(BaseModel):
    """An incoming record that collides with an existing stored row."""

    incoming_index: int
    existing_id: Any
    existing_source_id: str | None = None
    strategy: DedupStrategy
    confidence: float


# ── Records ─────────────────────────────────────────────────────────────────


class RawRecord(BaseModel):
    """Base for typed vendor payloads.

    Subclasses declare the fields a connector maps explicitly. Anything else
    the vendor sends is kept as an extra attribute and surfaces through
    extra_attributes() so it can land in custom_fields.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def extra_attributes(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class NormalizedRecord(BaseModel):
    """Tenant-scoped record in the normalized schema.

    Identity is (tenant_id, source, source_id). Records lacking source_id get
    one assigned by DedupResolver.resolve_identities before upsert.
    """

    entity_type: ClassVar[str] = ""

    tenant_id: str
    source: str
    source_id: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    source_data: dict[str, Any] = Field(default_factory=dict)


class DealRecord(NormalizedRecord):
    entity_type: ClassVar[str] = "deal"

    name: str | None = None
    amount: float | None = None
    currency: str | None = None
    stage: str | None = None
    close_date: datetime | None = None
    owner_name: str | None = None
    account_name: str | None = None


class ContactRecord(NormalizedRecord):
    entity_type: ClassVar[str] = "contact"

    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    full_name: str | None = None
    phone: str | None = None
    title: str | None = None
    company: str | None = None


class AccountRecord(NormalizedRecord):
    entity_type: ClassVar[str] = "account"

    name: str | None = None
    domain: str | None = None
    industry: str | None = None
    employee_count: int | None = None


class ConversationRecord(NormalizedRecord):
    entity_type: ClassVar[str] = "conversation"

    title: str | None = None
    occurred_at: datetime | None = None
    duration_seconds: int | None = None
    participants: list[str] = Field(default_factory=list)
    transcript_text: str | None = None
    summary: str | None = None


class TaskRecord(NormalizedRecord):
    entity_type: ClassVar[str] = "task"

    title: str | None = None
    status: str | None = None
    assignee: str | None = None
    due_date: datetime | None = None
    project: str | None = None


class DocumentRecord(NormalizedRecord):
    entity_type: ClassVar[str] = "document"

    title: str | None = None
    mime_type: str | None = None
    url: str | None = None
    modified_at: datetime | None = None
    content_text: str | None = None


# ── Drift ───────────────────────────────────────────────────────────────────


class SchemaSnapshot(BaseModel):
    """Custom field names observed per object type as of one sync."""

    object_types: dict[str, list[str]] = Field(default_factory=dict)
    captured_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class NewFieldEntry(BaseModel):
    """A custom field that appeared since the last snapshot."""

    object_type: str
    field_name: str
    fill_rate: float


# ── Outcomes ────────────────────────────────────────────────────────────────


class BatchFailure(BaseModel):
    """A write batch that was rolled back."""

    batch_index: int
    size: int
    error: str


class UpsertResult(BaseModel):
    """Outcome of a chunked upsert: counts plus every rolled-back batch."""

    inserted: int = 0
    failed: int = 0
    failed_batches: list[BatchFailure] = Field(default_factory=list)


class SyncResult(BaseModel):
    """Immutable summary of one sync invocation."""

    model_config = ConfigDict(frozen=True)

    records_fetched: int = 0
    records_stored: int = 0
    errors: list[str] = Field(default_factory=list)
    duration_ms: int = 0
    failed: bool = False


class ConnectionHealth(BaseModel):
    """Connector health as reported to the orchestration layer."""

    status: ConnectionStatus
    last_sync: datetime | None = None
    records_synced: int = 0
    errors: list[str] = Field(default_factory=list)
    rate_limit_status: dict[str, Any] | None = None


RECORD_TYPES: dict[str, type[NormalizedRecord]] = {
    cls.entity_type: cls
    for cls in (
        DealRecord,
        ContactRecord,
        AccountRecord,
        ConversationRecord,
        TaskRecord,
        DocumentRecord,
    )
}
