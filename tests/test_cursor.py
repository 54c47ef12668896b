"""Integration tests for SyncCursorTracker: connection lifecycle, attempts, sync log."""

from __future__ import annotations

import pytest

from src.syncengine.sync.cursor import SyncCursorTracker
from src.syncengine.sync.schemas import ConnectionStatus, SyncResult

TENANT = "tenant-alpha"


@pytest.fixture
def tracker(session_factory) -> SyncCursorTracker:
    return SyncCursorTracker(session_factory)


# ── Connections ──────────────────────────────────────────────────────────────


class TestConnections:
    @pytest.mark.asyncio
    async def test_connect_creates_healthy_connection(self, tracker):
        connection = await tracker.connect(TENANT, "crm_rest", "token:abc")

        assert connection.status == ConnectionStatus.HEALTHY.value
        assert connection.credential_ref == "token:abc"
        assert connection.sync_cursor == {}

    @pytest.mark.asyncio
    async def test_connect_twice_keeps_one_row(self, tracker):
        first = await tracker.connect(TENANT, "crm_rest")
        second = await tracker.connect(TENANT, "crm_rest")
        assert first.id == second.id
        assert len(await tracker.list_connections(TENANT)) == 1

    @pytest.mark.asyncio
    async def test_same_connector_per_tenant(self, tracker):
        await tracker.connect(TENANT, "crm_rest")
        await tracker.connect("tenant-beta", "crm_rest")
        assert [c.tenant_id for c in await tracker.list_connections(TENANT)] == [TENANT]

    @pytest.mark.asyncio
    async def test_disconnect_missing_returns_none(self, tracker):
        assert await tracker.disconnect(TENANT, "nope") is None

    @pytest.mark.asyncio
    async def test_reconnect_revives_disconnected(self, tracker):
        await tracker.connect(TENANT, "crm_rest")
        await tracker.record_attempt(TENANT, "crm_rest", 5, cursor={"streams": {"deal": {}}})
        await tracker.disconnect(TENANT, "crm_rest")

        revived = await tracker.connect(TENANT, "crm_rest")

        assert revived.status == ConnectionStatus.HEALTHY.value
        assert revived.sync_cursor["streams"] == {"deal": {}}


# ── Attempts ─────────────────────────────────────────────────────────────────


class TestRecordAttempt:
    @pytest.mark.asyncio
    async def test_success_is_healthy(self, tracker):
        await tracker.connect(TENANT, "crm_rest")
        connection = await tracker.record_attempt(TENANT, "crm_rest", 120)

        assert connection.status == ConnectionStatus.HEALTHY.value
        assert connection.error_message is None
        assert connection.last_sync_at is not None
        assert connection.sync_cursor["last_sync_records"] == 120
        assert "last_sync_at" in connection.sync_cursor

    @pytest.mark.asyncio
    async def test_errors_degrade_and_fatal_errors(self, tracker):
        await tracker.connect(TENANT, "crm_rest")

        degraded = await tracker.record_attempt(TENANT, "crm_rest", 10, error="page 3: HTTP 503")
        assert degraded.status == ConnectionStatus.DEGRADED.value
        assert degraded.error_message == "page 3: HTTP 503"

        failed = await tracker.record_attempt(TENANT, "crm_rest", 0, error="HTTP 401", fatal=True)
        assert failed.status == ConnectionStatus.ERROR.value

        recovered = await tracker.record_attempt(TENANT, "crm_rest", 3)
        assert recovered.status == ConnectionStatus.HEALTHY.value
        assert recovered.error_message is None

    @pytest.mark.asyncio
    async def test_disconnected_stays_disconnected(self, tracker):
        await tracker.connect(TENANT, "crm_rest")
        await tracker.disconnect(TENANT, "crm_rest")

        await tracker.record_attempt(TENANT, "crm_rest", 50)
        await tracker.record_attempt(TENANT, "crm_rest", 0, error="boom")

        connection = await tracker.get_connection(TENANT, "crm_rest")
        assert connection.status == ConnectionStatus.DISCONNECTED.value
        assert connection.last_sync_at is None

    @pytest.mark.asyncio
    async def test_unknown_connection_is_ignored(self, tracker):
        assert await tracker.record_attempt(TENANT, "ghost", 1) is None

    @pytest.mark.asyncio
    async def test_cursor_merges(self, tracker):
        await tracker.connect(TENANT, "crm_rest")
        await tracker.merge_cursor(TENANT, "crm_rest", {"schema_snapshot": {"object_types": {}}})
        connection = await tracker.record_attempt(TENANT, "crm_rest", 1, cursor={"streams": {}})

        assert set(connection.sync_cursor) >= {"schema_snapshot", "streams", "last_sync_records"}


# ── Health ───────────────────────────────────────────────────────────────────


class TestHealth:
    @pytest.mark.asyncio
    async def test_missing_connection_reports_disconnected(self, tracker):
        health = await tracker.health(TENANT, "crm_rest")
        assert health.status == ConnectionStatus.DISCONNECTED
        assert health.records_synced == 0

    @pytest.mark.asyncio
    async def test_health_reflects_last_attempt(self, tracker):
        await tracker.connect(TENANT, "crm_rest")
        await tracker.record_attempt(TENANT, "crm_rest", 42, error="deal page 1: HTTP 503")

        health = await tracker.health(TENANT, "crm_rest")
        assert health.status == ConnectionStatus.DEGRADED
        assert health.records_synced == 42
        assert health.errors == ["deal page 1: HTTP 503"]
        assert health.last_sync is not None


# ── Sync Log ─────────────────────────────────────────────────────────────────


class TestSyncLog:
    @pytest.mark.asyncio
    async def test_entries_newest_first_and_filtered(self, tracker):
        await tracker.append_sync_log(TENANT, "crm_rest", SyncResult(records_fetched=1), run_id="r1")
        await tracker.append_sync_log(
            TENANT, "crm_rest", SyncResult(records_fetched=2, errors=["x"]), run_id="r2"
        )
        await tracker.append_sync_log(TENANT, "calls", SyncResult(failed=True), run_id="r3")

        everything = await tracker.list_sync_log(TENANT)
        assert [e.run_id for e in everything] == ["r3", "r2", "r1"]

        crm_only = await tracker.list_sync_log(TENANT, "crm_rest", limit=1)
        assert [e.run_id for e in crm_only] == ["r2"]
        assert crm_only[0].errors == ["x"]

        assert await tracker.list_sync_log("tenant-beta") == []
