"""Sync engine tables: connections, normalized entities, findings, sync log.

Revision ID: 001_sync_engine
Revises:
Create Date: 2026-10-16

Creates:
- connections: One row per (tenant, connector) with status and sync cursor
- deals, contacts, accounts, conversations, tasks, documents: Normalized
  entity tables, each unique on (tenant_id, source, source_id)
- findings: Tenant-facing alerts such as new custom fields
- sync_log: One row per sync invocation
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = "001_sync_engine"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENTITY_TABLES = ("deals", "contacts", "accounts", "conversations", "tasks", "documents")


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def _entity_columns() -> list[sa.Column]:
    return [
        _id_column(),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("source", sa.String(100), nullable=False),
        sa.Column("source_id", sa.String(255), nullable=False),
        sa.Column("custom_fields", JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column("source_data", JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        *_timestamps(),
    ]


def _create_entity_table(name: str, *columns: sa.Column) -> None:
    op.create_table(
        name,
        *_entity_columns(),
        *columns,
        sa.UniqueConstraint(
            "tenant_id", "source", "source_id", name=f"uq_{name}_tenant_source_id"
        ),
    )
    op.create_index(f"ix_{name}_tenant_id", name, ["tenant_id"])


def upgrade() -> None:
    # ── connections ─────────────────────────────────────────────────────

    op.create_table(
        "connections",
        _id_column(),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("connector_name", sa.String(100), nullable=False),
        sa.Column("credential_ref", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), server_default="healthy", nullable=False),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_cursor", JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "tenant_id", "connector_name", name="uq_connections_tenant_connector"
        ),
    )
    op.create_index("ix_connections_tenant_id", "connections", ["tenant_id"])

    # ── entity tables ───────────────────────────────────────────────────

    _create_entity_table(
        "deals",
        sa.Column("name", sa.String(500), nullable=True),
        sa.Column("amount", sa.Float(), nullable=True),
        sa.Column("currency", sa.String(10), nullable=True),
        sa.Column("stage", sa.String(100), nullable=True),
        sa.Column("close_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("owner_name", sa.String(255), nullable=True),
        sa.Column("account_name", sa.String(500), nullable=True),
    )
    _create_entity_table(
        "contacts",
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("first_name", sa.String(200), nullable=True),
        sa.Column("last_name", sa.String(200), nullable=True),
        sa.Column("full_name", sa.String(400), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("title", sa.String(255), nullable=True),
        sa.Column("company", sa.String(500), nullable=True),
    )
    _create_entity_table(
        "accounts",
        sa.Column("name", sa.String(500), nullable=True),
        sa.Column("domain", sa.String(255), nullable=True),
        sa.Column("industry", sa.String(255), nullable=True),
        sa.Column("employee_count", sa.Integer(), nullable=True),
    )
    _create_entity_table(
        "conversations",
        sa.Column("title", sa.String(500), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("participants", JSONB(), server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column("transcript_text", sa.Text(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
    )
    _create_entity_table(
        "tasks",
        sa.Column("title", sa.String(500), nullable=True),
        sa.Column("status", sa.String(100), nullable=True),
        sa.Column("assignee", sa.String(255), nullable=True),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("project", sa.String(500), nullable=True),
    )
    _create_entity_table(
        "documents",
        sa.Column("title", sa.String(500), nullable=True),
        sa.Column("mime_type", sa.String(255), nullable=True),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("modified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("content_text", sa.Text(), nullable=True),
    )

    # ── findings ────────────────────────────────────────────────────────

    op.create_table(
        "findings",
        _id_column(),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("category", sa.String(100), nullable=False),
        sa.Column("severity", sa.String(20), server_default="info", nullable=False),
        sa.Column("skill_id", sa.String(100), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20), server_default="open", nullable=False),
        sa.Column("metadata", JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column("found_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_findings_tenant_id", "findings", ["tenant_id"])
    op.create_index(
        "ix_findings_tenant_category_status",
        "findings",
        ["tenant_id", "category", "status"],
    )

    # ── sync_log ────────────────────────────────────────────────────────

    op.create_table(
        "sync_log",
        _id_column(),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("connector_name", sa.String(100), nullable=False),
        sa.Column("run_id", sa.String(64), nullable=True),
        sa.Column("records_fetched", sa.Integer(), server_default="0", nullable=False),
        sa.Column("records_stored", sa.Integer(), server_default="0", nullable=False),
        sa.Column("errors", JSONB(), server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column("duration_ms", sa.Integer(), server_default="0", nullable=False),
        sa.Column("failed", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_sync_log_tenant_id", "sync_log", ["tenant_id"])
    op.create_index(
        "ix_sync_log_tenant_connector_created",
        "sync_log",
        ["tenant_id", "connector_name", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("sync_log")
    op.drop_table("findings")
    for name in reversed(ENTITY_TABLES):
        op.drop_table(name)
    op.drop_table("connections")
