"""Integration tests for schema drift detection and finding deduplication."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from src.syncengine.sync.cursor import SyncCursorTracker
from src.syncengine.sync.drift import (
    FINDING_CATEGORY,
    FINDING_SKILL_ID,
    SNAPSHOT_CURSOR_KEY,
    SchemaDriftDetector,
    build_finding_message,
    fill_rate,
)
from src.syncengine.sync.schemas import DealRecord, NewFieldEntry
from src.syncengine.sync.upsert import TransactionalUpserter

TENANT = "tenant-alpha"
CONNECTOR = "crm_rest"


async def _store_deals(session_factory, custom_fields: list[dict]) -> None:
    records = [
        DealRecord(
            tenant_id=TENANT,
            source="crm",
            source_id=str(i),
            name=f"Deal {i}",
            custom_fields=fields,
        )
        for i, fields in enumerate(custom_fields)
    ]
    await TransactionalUpserter(session_factory).upsert_batch(records)


@pytest_asyncio.fixture
async def tracker(session_factory) -> SyncCursorTracker:
    tracker = SyncCursorTracker(session_factory)
    await tracker.connect(TENANT, CONNECTOR)
    return tracker


@pytest.fixture
def detector(session_factory, tracker, observer) -> SchemaDriftDetector:
    return SchemaDriftDetector(session_factory, tracker, observer=observer)


# ── Pure Helpers ─────────────────────────────────────────────────────────────


class TestFillRate:
    def test_counts_non_empty_values(self):
        maps = [{"tier": "gold"}, {"tier": ""}, {"tier": None}, {}]
        assert fill_rate(maps, "tier") == 25.0

    def test_no_rows(self):
        assert fill_rate([], "tier") == 0.0

    def test_message_lists_fields_per_object(self):
        message = build_finding_message(
            CONNECTOR,
            [
                NewFieldEntry(object_type="deal", field_name="tier", fill_rate=15.0),
                NewFieldEntry(object_type="contact", field_name="persona", fill_rate=40.0),
            ],
        )
        assert message.startswith("2 new crm_rest fields detected")
        assert "tier (15% filled)" in message
        assert "1 on contact: persona (40% filled)" in message


# ── Detection ────────────────────────────────────────────────────────────────


class TestDetectNewFields:
    @pytest.mark.asyncio
    async def test_first_run_stores_baseline_only(self, session_factory, tracker, detector):
        await _store_deals(session_factory, [{"region": "EMEA"}])
        snapshot = await detector.capture_schema(TENANT)

        assert snapshot.object_types["deal"] == ["region"]
        assert await detector.detect_new_fields(TENANT, CONNECTOR, snapshot) == []

        connection = await tracker.get_connection(TENANT, CONNECTOR)
        assert connection.sync_cursor[SNAPSHOT_CURSOR_KEY]["object_types"]["deal"] == ["region"]

    @pytest.mark.asyncio
    async def test_new_field_at_15_percent_reported(self, session_factory, detector):
        await _store_deals(session_factory, [{"region": "EMEA"} for _ in range(20)])
        await detector.detect_new_fields(TENANT, CONNECTOR, await detector.capture_schema(TENANT))

        # 3 of 20 rows now carry "tier", 1 of 20 carries "rare"
        fields = [{"region": "EMEA"} for _ in range(20)]
        for i in range(3):
            fields[i]["tier"] = "gold"
        fields[5]["rare"] = "x"
        await _store_deals(session_factory, fields)

        new_fields = await detector.detect_new_fields(
            TENANT, CONNECTOR, await detector.capture_schema(TENANT)
        )

        assert new_fields == [NewFieldEntry(object_type="deal", field_name="tier", fill_rate=15.0)]

    @pytest.mark.asyncio
    async def test_snapshot_replaced_after_compare(self, session_factory, detector):
        await _store_deals(session_factory, [{"a": 1}])
        await detector.detect_new_fields(TENANT, CONNECTOR, await detector.capture_schema(TENANT))
        await _store_deals(session_factory, [{"a": 1, "b": 2}])

        first = await detector.detect_new_fields(TENANT, CONNECTOR, await detector.capture_schema(TENANT))
        second = await detector.detect_new_fields(TENANT, CONNECTOR, await detector.capture_schema(TENANT))

        assert [f.field_name for f in first] == ["b"]
        assert second == []


# ── Findings ─────────────────────────────────────────────────────────────────


class TestRaiseFinding:
    @pytest.mark.asyncio
    async def test_creates_open_finding(self, detector, observer):
        entries = [NewFieldEntry(object_type="deal", field_name="tier", fill_rate=15.0)]
        finding = await detector.raise_finding(TENANT, CONNECTOR, entries)

        assert finding.category == FINDING_CATEGORY
        assert finding.skill_id == FINDING_SKILL_ID
        assert finding.severity == "info"
        assert finding.status == "open"
        assert finding.finding_metadata["connector_type"] == CONNECTOR
        assert finding.finding_metadata["new_fields"][0]["field_name"] == "tier"
        assert observer.of("drift_finding") == [{"connector": CONNECTOR, "action": "created", "fields": 1}]

    @pytest.mark.asyncio
    async def test_repeat_within_window_updates_in_place(self, detector, observer):
        first = await detector.raise_finding(
            TENANT, CONNECTOR, [NewFieldEntry(object_type="deal", field_name="tier", fill_rate=15.0)]
        )
        second = await detector.raise_finding(
            TENANT,
            CONNECTOR,
            [
                NewFieldEntry(object_type="deal", field_name="tier", fill_rate=15.0),
                NewFieldEntry(object_type="deal", field_name="segment", fill_rate=30.0),
            ],
        )

        findings = await detector.list_findings(TENANT)
        assert len(findings) == 1
        assert second.id == first.id
        assert "segment" in findings[0].message
        assert [e["action"] for e in observer.of("drift_finding")] == ["created", "updated"]

    @pytest.mark.asyncio
    async def test_other_connector_gets_its_own_finding(self, detector):
        entry = [NewFieldEntry(object_type="deal", field_name="tier", fill_rate=15.0)]
        await detector.raise_finding(TENANT, CONNECTOR, entry)
        await detector.raise_finding(TENANT, "crm_other", entry)
        assert len(await detector.list_findings(TENANT)) == 2

    @pytest.mark.asyncio
    async def test_stale_finding_not_reused(self, session_factory, detector):
        entry = [NewFieldEntry(object_type="deal", field_name="tier", fill_rate=15.0)]
        old = await detector.raise_finding(TENANT, CONNECTOR, entry)

        async for session in session_factory():
            stored = await session.get(type(old), old.id)
            stored.found_at = datetime.now(timezone.utc) - timedelta(days=8)
            await session.commit()

        await detector.raise_finding(TENANT, CONNECTOR, entry)
        assert len(await detector.list_findings(TENANT)) == 2

    @pytest.mark.asyncio
    async def test_nothing_new_raises_nothing(self, detector):
        assert await detector.raise_finding(TENANT, CONNECTOR, []) is None
        assert await detector.list_findings(TENANT) == []
