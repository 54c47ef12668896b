"""REST API endpoints for connection status, sync history and findings.

Read-mostly views over what the sync engine records per tenant, plus an
explicit disconnect. Sync runs themselves are started by the orchestration
layer, not over HTTP.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from src.syncengine.api.deps import get_drift_detector, get_tracker
from src.syncengine.sync.cursor import SyncCursorTracker
from src.syncengine.sync.drift import SchemaDriftDetector
from src.syncengine.sync.models import ConnectionModel, FindingModel, SyncLogModel

router = APIRouter(prefix="/api/v1/tenants/{tenant_id}", tags=["connections"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class ConnectionResponse(BaseModel):
    """Response for connection data, serializes datetimes to ISO strings."""

    id: str
    tenant_id: str
    connector_name: str
    status: str
    last_sync_at: str | None = None
    error_message: str | None = None
    records_synced: int = 0


class SyncLogResponse(BaseModel):
    """One sync invocation."""

    id: str
    connector_name: str
    run_id: str | None = None
    records_fetched: int = 0
    records_stored: int = 0
    errors: list[str] = Field(default_factory=list)
    duration_ms: int = 0
    failed: bool = False
    created_at: str | None = None


class FindingResponse(BaseModel):
    """An open or resolved finding."""

    id: str
    category: str
    severity: str
    skill_id: str
    title: str
    message: str
    status: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    found_at: str | None = None
    resolved_at: str | None = None


# ── Helpers ──────────────────────────────────────────────────────────────────


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def _connection_response(connection: ConnectionModel) -> ConnectionResponse:
    cursor = connection.sync_cursor or {}
    return ConnectionResponse(
        id=str(connection.id),
        tenant_id=connection.tenant_id,
        connector_name=connection.connector_name,
        status=connection.status,
        last_sync_at=_iso(connection.last_sync_at),
        error_message=connection.error_message,
        records_synced=int(cursor.get("last_sync_records", 0)),
    )


def _sync_log_response(entry: SyncLogModel) -> SyncLogResponse:
    return SyncLogResponse(
        id=str(entry.id),
        connector_name=entry.connector_name,
        run_id=entry.run_id,
        records_fetched=entry.records_fetched,
        records_stored=entry.records_stored,
        errors=list(entry.errors or []),
        duration_ms=entry.duration_ms,
        failed=entry.failed,
        created_at=_iso(entry.created_at),
    )


def _finding_response(finding: FindingModel) -> FindingResponse:
    return FindingResponse(
        id=str(finding.id),
        category=finding.category,
        severity=finding.severity,
        skill_id=finding.skill_id,
        title=finding.title,
        message=finding.message,
        status=finding.status,
        metadata=dict(finding.finding_metadata or {}),
        found_at=_iso(finding.found_at),
        resolved_at=_iso(finding.resolved_at),
    )


# ── Connection Endpoints ─────────────────────────────────────────────────────


@router.get("/connections", response_model=list[ConnectionResponse])
async def list_connections(
    tenant_id: str,
    tracker: SyncCursorTracker = Depends(get_tracker),
) -> list[ConnectionResponse]:
    """List every connection configured for the tenant."""
    connections = await tracker.list_connections(tenant_id)
    return [_connection_response(c) for c in connections]


@router.post(
    "/connections/{connector_name}/disconnect",
    response_model=ConnectionResponse,
)
async def disconnect_connection(
    tenant_id: str,
    connector_name: str,
    tracker: SyncCursorTracker = Depends(get_tracker),
) -> ConnectionResponse:
    """Disconnect a connection. Later sync attempts leave it disconnected."""
    connection = await tracker.disconnect(tenant_id, connector_name)
    if connection is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Connection {connector_name} not found",
        )
    return _connection_response(connection)


@router.get("/sync-log", response_model=list[SyncLogResponse])
async def list_sync_log(
    tenant_id: str,
    connector_name: str | None = Query(None, description="Filter by connector"),
    limit: int = Query(50, ge=1, le=500),
    tracker: SyncCursorTracker = Depends(get_tracker),
) -> list[SyncLogResponse]:
    """Most recent sync invocations first."""
    entries = await tracker.list_sync_log(tenant_id, connector_name, limit=limit)
    return [_sync_log_response(e) for e in entries]


@router.get("/findings", response_model=list[FindingResponse])
async def list_findings(
    tenant_id: str,
    include_resolved: bool = Query(False),
    detector: SchemaDriftDetector = Depends(get_drift_detector),
) -> list[FindingResponse]:
    """Findings raised for the tenant, newest first."""
    findings = await detector.list_findings(tenant_id, include_resolved=include_resolved)
    return [_finding_response(f) for f in findings]
