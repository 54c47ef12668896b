"""Integration tests for the HTTP API: health, connections, sync log, findings.

The app is built with create_app(session_factory=...) so every request runs
against the per-test SQLite database; httpx's ASGITransport does not run the
lifespan, so no global engine is touched.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.syncengine.main import create_app
from src.syncengine.sync.cursor import SyncCursorTracker
from src.syncengine.sync.drift import SchemaDriftDetector
from src.syncengine.sync.schemas import NewFieldEntry, SyncResult

TENANT = "tenant-alpha"
PREFIX = f"/api/v1/tenants/{TENANT}"


@pytest_asyncio.fixture
async def client(session_factory):
    app = create_app(session_factory=session_factory)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def tracker(session_factory) -> SyncCursorTracker:
    return SyncCursorTracker(session_factory)


# ── Health ───────────────────────────────────────────────────────────────────


class TestHealthEndpoints:
    @pytest.mark.asyncio
    async def test_liveness(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_ready_with_database(self, client):
        response = await client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["checks"]["database"] == "ok"

    @pytest.mark.asyncio
    async def test_degraded_without_database(self):
        async def unreachable():
            raise OSError("connection refused")
            yield

        app = create_app(session_factory=unreachable)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/health/ready")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "degraded"
        assert "connection refused" in body["checks"]["database_error"]

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client):
        generated = await client.get("/health")
        assert generated.headers["X-Request-ID"]

        supplied = await client.get("/health", headers={"X-Request-ID": "req-123"})
        assert supplied.headers["X-Request-ID"] == "req-123"

    @pytest.mark.asyncio
    async def test_metrics_exposed(self, client):
        await client.get("/health")
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "http_requests_total" in response.text


# ── Connections ──────────────────────────────────────────────────────────────


class TestConnectionEndpoints:
    @pytest.mark.asyncio
    async def test_list_connections(self, client, tracker):
        await tracker.connect(TENANT, "crm_rest")
        await tracker.record_attempt(TENANT, "crm_rest", 42)
        await tracker.connect("tenant-beta", "crm_rest")

        response = await client.get(f"{PREFIX}/connections")

        assert response.status_code == 200
        (connection,) = response.json()
        assert connection["connector_name"] == "crm_rest"
        assert connection["status"] == "healthy"
        assert connection["records_synced"] == 42
        assert connection["last_sync_at"] is not None

    @pytest.mark.asyncio
    async def test_disconnect(self, client, tracker):
        await tracker.connect(TENANT, "crm_rest")

        response = await client.post(f"{PREFIX}/connections/crm_rest/disconnect")

        assert response.status_code == 200
        assert response.json()["status"] == "disconnected"
        assert (await tracker.get_connection(TENANT, "crm_rest")).status == "disconnected"

    @pytest.mark.asyncio
    async def test_disconnect_unknown_is_404(self, client):
        response = await client.post(f"{PREFIX}/connections/nope/disconnect")
        assert response.status_code == 404
        assert response.json()["detail"] == "Connection nope not found"


# ── Sync Log & Findings ──────────────────────────────────────────────────────


class TestHistoryEndpoints:
    @pytest.mark.asyncio
    async def test_sync_log(self, client, tracker):
        await tracker.append_sync_log(
            TENANT, "crm_rest", SyncResult(records_fetched=3, records_stored=2, errors=["x"]), run_id="r1"
        )
        await tracker.append_sync_log(TENANT, "calls", SyncResult(), run_id="r2")

        everything = (await client.get(f"{PREFIX}/sync-log")).json()
        assert [e["run_id"] for e in everything] == ["r2", "r1"]

        crm = (await client.get(f"{PREFIX}/sync-log", params={"connector_name": "crm_rest"})).json()
        assert len(crm) == 1
        assert crm[0]["records_stored"] == 2
        assert crm[0]["errors"] == ["x"]

    @pytest.mark.asyncio
    async def test_sync_log_limit_validated(self, client):
        response = await client.get(f"{PREFIX}/sync-log", params={"limit": 0})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_findings(self, client, session_factory):
        detector = SchemaDriftDetector(session_factory)
        await detector.raise_finding(
            TENANT, "crm_rest", [NewFieldEntry(object_type="deal", field_name="tier", fill_rate=15.0)]
        )

        response = await client.get(f"{PREFIX}/findings")

        assert response.status_code == 200
        (finding,) = response.json()
        assert finding["status"] == "open"
        assert finding["metadata"]["connector_type"] == "crm_rest"
        assert "tier" in finding["message"]
        assert finding["resolved_at"] is None


# ── Lifespan ─────────────────────────────────────────────────────────────────


class TestLifespan:
    @pytest.mark.asyncio
    async def test_injected_factory_leaves_settings_engine_alone(self, session_factory):
        app = create_app(session_factory=session_factory)

        with patch("src.syncengine.main.init_db", new_callable=AsyncMock) as init_db, patch(
            "src.syncengine.main.close_db", new_callable=AsyncMock
        ) as close_db:
            async with app.router.lifespan_context(app):
                pass

        init_db.assert_not_awaited()
        close_db.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_default_app_initializes_and_closes_database(self):
        app = create_app()

        with patch("src.syncengine.main.init_db", new_callable=AsyncMock) as init_db, patch(
            "src.syncengine.main.close_db", new_callable=AsyncMock
        ) as close_db:
            async with app.router.lifespan_context(app):
                init_db.assert_awaited_once()
                close_db.assert_not_awaited()

        close_db.assert_awaited_once()
