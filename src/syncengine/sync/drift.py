"""Schema drift detection for vendor custom fields.

After a sync, the custom field names present on stored rows are compared
with the snapshot kept in the connection's sync_cursor. Fields that are new
and populated on at least DRIFT_FILL_RATE_THRESHOLD percent of rows become a
``new_crm_fields`` finding. An open finding for the same connector raised
within DRIFT_FINDING_WINDOW_DAYS is updated in place instead of duplicated.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import select

from src.syncengine.config import get_settings
from src.syncengine.core.database import SessionFactory
from src.syncengine.sync.cursor import SyncCursorTracker
from src.syncengine.sync.models import FindingModel
from src.syncengine.sync.observer import SyncObserver, resolve_observer
from src.syncengine.sync.repository import EntityRepository
from src.syncengine.sync.schemas import NewFieldEntry, SchemaSnapshot

logger = structlog.get_logger(__name__)

FINDING_CATEGORY = "new_crm_fields"
FINDING_SKILL_ID = "system/field-detector"
FINDING_SEVERITY = "info"
SNAPSHOT_CURSOR_KEY = "schema_snapshot"
DEFAULT_OBJECT_TYPES = ("deal", "contact", "account")


def _is_filled(value: Any) -> bool:
    return value is not None and value != ""


def fill_rate(custom_field_maps: Sequence[dict[str, Any]], field_name: str) -> float:
    """Percentage of rows (0-100) where ``field_name`` is non-null and non-empty."""
    if not custom_field_maps:
        return 0.0
    filled = sum(1 for fields in custom_field_maps if _is_filled(fields.get(field_name)))
    return round(filled / len(custom_field_maps) * 100, 1)


def build_finding_message(connector_name: str, new_fields: Sequence[NewFieldEntry]) -> str:
    by_object: dict[str, list[str]] = {}
    for entry in new_fields:
        by_object.setdefault(entry.object_type, []).append(
            f"{entry.field_name} ({entry.fill_rate:g}% filled)"
        )
    summaries = "; ".join(
        f"{len(fields)} on {object_type}: {', '.join(fields)}"
        for object_type, fields in by_object.items()
    )
    plural = "s" if len(new_fields) > 1 else ""
    return (
        f"{len(new_fields)} new {connector_name} field{plural} detected: {summaries}. "
        "Review and add to required field tracking if needed."
    )


class SchemaDriftDetector:
    """Captures custom-field snapshots and raises deduplicated drift findings.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        tracker: Connection store holding the previous snapshot.
        observer: Receives drift_finding events.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        tracker: SyncCursorTracker | None = None,
        *,
        observer: SyncObserver | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._tracker = tracker or SyncCursorTracker(session_factory)
        self._entities = EntityRepository(session_factory)
        self._observer = resolve_observer(observer)

    async def capture_schema(
        self, tenant_id: str, object_types: Sequence[str] = DEFAULT_OBJECT_TYPES
    ) -> SchemaSnapshot:
        """Distinct custom field names on stored rows, per object type."""
        observed: dict[str, list[str]] = {}
        for object_type in object_types:
            names: set[str] = set()
            for fields in await self._entities.custom_field_maps(tenant_id, object_type):
                names.update(fields)
            observed[object_type] = sorted(names)
        return SchemaSnapshot(object_types=observed)

    async def detect_new_fields(
        self, tenant_id: str, connector_name: str, current: SchemaSnapshot
    ) -> list[NewFieldEntry]:
        """Diff ``current`` against the stored snapshot, then replace it.

        The first call for a connection stores a baseline and reports nothing.
        """
        connection = await self._tracker.get_connection(tenant_id, connector_name)
        stored_raw = (connection.sync_cursor or {}).get(SNAPSHOT_CURSOR_KEY) if connection else None
        snapshot_data = {SNAPSHOT_CURSOR_KEY: current.model_dump(mode="json")}

        if stored_raw is None:
            await self._tracker.merge_cursor(tenant_id, connector_name, snapshot_data)
            logger.info("drift.baseline_stored", tenant_id=tenant_id, connector=connector_name)
            return []

        stored = SchemaSnapshot.model_validate(stored_raw)
        threshold = get_settings().DRIFT_FILL_RATE_THRESHOLD
        new_fields: list[NewFieldEntry] = []
        for object_type, fields in current.object_types.items():
            known = set(stored.object_types.get(object_type, []))
            added = [f for f in fields if f not in known]
            if not added:
                continue
            maps = await self._entities.custom_field_maps(tenant_id, object_type)
            for field_name in added:
                rate = fill_rate(maps, field_name)
                if rate >= threshold:
                    new_fields.append(
                        NewFieldEntry(object_type=object_type, field_name=field_name, fill_rate=rate)
                    )

        await self._tracker.merge_cursor(tenant_id, connector_name, snapshot_data)
        logger.info(
            "drift.compared",
            tenant_id=tenant_id,
            connector=connector_name,
            new_fields=len(new_fields),
        )
        return new_fields

    async def raise_finding(
        self, tenant_id: str, connector_name: str, new_fields: Sequence[NewFieldEntry]
    ) -> FindingModel | None:
        """Create or refresh the open new-fields finding for this connector.

        Returns:
            The created or updated finding, or None when there is nothing to report.
        """
        if not new_fields:
            return None

        settings = get_settings()
        now = datetime.now(timezone.utc)
        window_start = now - timedelta(days=settings.DRIFT_FINDING_WINDOW_DAYS)
        message = build_finding_message(connector_name, new_fields)
        metadata = {
            "connector_type": connector_name,
            "new_fields": [f.model_dump() for f in new_fields],
            "detected_at": now.isoformat(),
        }

        stmt = (
            select(FindingModel)
            .where(
                FindingModel.tenant_id == tenant_id,
                FindingModel.category == FINDING_CATEGORY,
                FindingModel.status == "open",
                FindingModel.resolved_at.is_(None),
                FindingModel.found_at > window_start,
            )
            .order_by(FindingModel.found_at.desc())
        )

        finding: FindingModel | None = None
        action = "created"
        async for session in self._session_factory():
            result = await session.execute(stmt)
            finding = next(
                (
                    f
                    for f in result.scalars().all()
                    if (f.finding_metadata or {}).get("connector_type") == connector_name
                ),
                None,
            )
            if finding is not None:
                finding.message = message
                finding.finding_metadata = metadata
                finding.found_at = now
                action = "updated"
            else:
                finding = FindingModel(
                    tenant_id=tenant_id,
                    category=FINDING_CATEGORY,
                    severity=FINDING_SEVERITY,
                    skill_id=FINDING_SKILL_ID,
                    title=f"New {connector_name} fields detected",
                    message=message,
                    status="open",
                    finding_metadata=metadata,
                    found_at=now,
                )
                session.add(finding)
            await session.commit()
            await session.refresh(finding)

        logger.info(
            "drift.finding_" + action,
            tenant_id=tenant_id,
            connector=connector_name,
            fields=len(new_fields),
        )
        self._observer.drift_finding(connector_name, action, len(new_fields))
        return finding

    async def list_findings(
        self, tenant_id: str, include_resolved: bool = False
    ) -> list[FindingModel]:
        stmt = select(FindingModel).where(FindingModel.tenant_id == tenant_id)
        if not include_resolved:
            stmt = stmt.where(FindingModel.resolved_at.is_(None))
        stmt = stmt.order_by(FindingModel.found_at.desc())

        findings: list[FindingModel] = []
        async for session in self._session_factory():
            result = await session.execute(stmt)
            findings = list(result.scalars().all())
        return findings
