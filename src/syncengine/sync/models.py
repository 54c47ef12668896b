"""SQLAlchemy models for connections, synced entities, findings and the sync log.

Every table carries tenant_id, and every uniqueness constraint leads with it
so one tenant's rows can never collide with another's.

Entity tables (deals, contacts, accounts, conversations, tasks, documents)
share the columns in EntityMixin and are unique on (tenant_id, source,
source_id). Columns listed in a model's __merge_rules__ use that rule when an
upsert hits an existing row; all other columns are overwritten.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, ClassVar

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.syncengine.core.database import Base
from src.syncengine.sync.schemas import ConnectionStatus, MergeRule

JSONType = JSON().with_variant(JSONB(), "postgresql")


class ConnectionModel(Base):
    """A tenant's connection to one source system."""

    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint("tenant_id", "connector_name", name="uq_connections_tenant_connector"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    connector_name: Mapped[str] = mapped_column(String(100), nullable=False)
    credential_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ConnectionStatus.HEALTHY.value
    )
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sync_cursor: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )


# ── Entity Tables ───────────────────────────────────────────────────────────


class EntityMixin:
    """Columns shared by every normalized entity table."""

    __merge_rules__: ClassVar[dict[str, MergeRule]] = {}

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(100), nullable=False)
    source_id: Mapped[str] = mapped_column(String(255), nullable=False)
    custom_fields: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    source_data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )

    @classmethod
    def merge_rule(cls, column: str) -> MergeRule:
        return cls.__merge_rules__.get(column, MergeRule.OVERWRITE)


class DealModel(EntityMixin, Base):
    __tablename__ = "deals"
    __table_args__ = (
        UniqueConstraint("tenant_id", "source", "source_id", name="uq_deals_tenant_source_id"),
    )

    name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    currency: Mapped[str | None] = mapped_column(String(10), nullable=True)
    stage: Mapped[str | None] = mapped_column(String(100), nullable=True)
    close_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    owner_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    account_name: Mapped[str | None] = mapped_column(String(500), nullable=True)


class ContactModel(EntityMixin, Base):
    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "source", "source_id", name="uq_contacts_tenant_source_id"),
    )

    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    full_name: Mapped[str | None] = mapped_column(String(400), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    company: Mapped[str | None] = mapped_column(String(500), nullable=True)


class AccountModel(EntityMixin, Base):
    __tablename__ = "accounts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "source", "source_id", name="uq_accounts_tenant_source_id"),
    )

    name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    industry: Mapped[str | None] = mapped_column(String(255), nullable=True)
    employee_count: Mapped[int | None] = mapped_column(Integer, nullable=True)


class ConversationModel(EntityMixin, Base):
    """Call or meeting recording. Transcript and summary are derived text."""

    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "source", "source_id", name="uq_conversations_tenant_source_id"
        ),
    )
    __merge_rules__: ClassVar[dict[str, MergeRule]] = {
        "transcript_text": MergeRule.PRESERVE_NON_EMPTY,
        "summary": MergeRule.PRESERVE_NON_EMPTY,
    }

    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    occurred_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    participants: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    transcript_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)


class TaskModel(EntityMixin, Base):
    __tablename__ = "tasks"
    __table_args__ = (
        UniqueConstraint("tenant_id", "source", "source_id", name="uq_tasks_tenant_source_id"),
    )

    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status: Mapped[str | None] = mapped_column(String(100), nullable=True)
    assignee: Mapped[str | None] = mapped_column(String(255), nullable=True)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    project: Mapped[str | None] = mapped_column(String(500), nullable=True)


class DocumentModel(EntityMixin, Base):
    """File from a storage source. Extracted content text is derived."""

    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint("tenant_id", "source", "source_id", name="uq_documents_tenant_source_id"),
    )
    __merge_rules__: ClassVar[dict[str, MergeRule]] = {
        "content_text": MergeRule.PRESERVE_NON_EMPTY,
    }

    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    modified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    content_text: Mapped[str | None] = mapped_column(Text, nullable=True)


ENTITY_MODELS: dict[str, type[EntityMixin]] = {
    "deal": DealModel,
    "contact": ContactModel,
    "account": AccountModel,
    "conversation": ConversationModel,
    "task": TaskModel,
    "document": DocumentModel,
}


def model_for(entity_type: str) -> type[EntityMixin]:
    """Return the table model for an entity type name."""
    try:
        return ENTITY_MODELS[entity_type]
    except KeyError:
        raise ValueError(f"Unknown entity type: {entity_type!r}") from None


# ── Findings & Sync Log ─────────────────────────────────────────────────────


class FindingModel(Base):
    """Alert surfaced to the tenant (e.g. new custom fields detected)."""

    __tablename__ = "findings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="info")
    skill_id: Mapped[str] = mapped_column(String(100), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    finding_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    found_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SyncLogModel(Base):
    """One row per sync invocation, written from its SyncResult."""

    __tablename__ = "sync_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    connector_name: Mapped[str] = mapped_column(String(100), nullable=False)
    run_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    records_fetched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_stored: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
