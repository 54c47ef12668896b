"""Unit tests for dedup strategy selection, matching and the tenant TTL cache.

Stored rows are supplied by an in-memory lookup; no database involved.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.syncengine.sync.cache import TenantTTLCache
from src.syncengine.sync.dedup import (
    DedupResolver,
    composite_key,
    dedup_source_id,
    mapping_fingerprint,
    normalize_amount,
    normalize_domain,
)
from src.syncengine.sync.schemas import AccountRecord, ContactRecord, DealRecord, DedupStrategy

TENANT = "tenant-alpha"


def _lookup(rows: list[dict]):
    calls: list[tuple[str, str]] = []

    async def lookup(tenant_id: str, entity_type: str) -> list[dict]:
        calls.append((tenant_id, entity_type))
        return rows

    lookup.calls = calls  # type: ignore[attr-defined]
    return lookup


# ── Strategy Selection ───────────────────────────────────────────────────────


class TestDetectStrategy:
    def test_external_id_wins(self):
        config = DedupResolver.detect_strategy("deal", {"external_id": "id", "name": "dealname"})
        assert config.strategy == DedupStrategy.EXTERNAL_ID
        assert config.confidence == 1.0
        assert config.warning is None

    def test_deal_composite_needs_all_three_fields(self):
        full = DedupResolver.detect_strategy(
            "deal", {"name": "n", "amount": "a", "close_date": "c", "external_id": None}
        )
        assert full.strategy == DedupStrategy.COMPOSITE
        assert full.key_fields == ("name", "amount", "close_date")
        assert full.confidence == 0.85
        assert full.warning

        partial = DedupResolver.detect_strategy("deal", {"name": "n", "amount": "a"})
        assert partial.strategy == DedupStrategy.NONE

    def test_contact_email(self):
        config = DedupResolver.detect_strategy("contact", {"email": "email", "first_name": "fn"})
        assert config.key_fields == ("email",)
        assert config.confidence == 0.95

    def test_contact_name_fallback_warns(self):
        config = DedupResolver.detect_strategy("contact", {"first_name": "fn", "last_name": "ln"})
        assert config.key_fields == ("name",)
        assert config.confidence == 0.60
        assert "Duplicate contacts" in config.warning

    def test_account_domain_then_name(self):
        assert DedupResolver.detect_strategy("account", {"domain": "d", "name": "n"}).key_fields == ("domain",)
        by_name = DedupResolver.detect_strategy("account", {"name": "n"})
        assert by_name.key_fields == ("name",)
        assert by_name.confidence == 0.70
        assert by_name.warning

    def test_nothing_mapped_is_none_with_warning(self):
        config = DedupResolver.detect_strategy("task", {"title": "t"})
        assert config.strategy == DedupStrategy.NONE
        assert config.confidence == 0.0
        assert "duplicate" in config.warning

    def test_deterministic(self):
        mapping = {"email": "email"}
        assert DedupResolver.detect_strategy("contact", mapping) == DedupResolver.detect_strategy(
            "contact", dict(mapping)
        )


class TestStrategyCaching:
    def test_strategy_cached_per_tenant(self):
        cache: TenantTTLCache = TenantTTLCache(ttl_seconds=60)
        resolver = DedupResolver(cache)
        mapping = {"email": "email"}

        first = resolver.strategy_for(TENANT, "contact", mapping)
        second = resolver.strategy_for(TENANT, "contact", mapping)

        assert first is second
        assert cache.hits == 1
        assert len(cache) == 1

    def test_mapping_change_is_a_new_key(self):
        cache: TenantTTLCache = TenantTTLCache(ttl_seconds=60)
        resolver = DedupResolver(cache)
        resolver.strategy_for(TENANT, "contact", {"email": "email"})
        config = resolver.strategy_for(TENANT, "contact", {"email": None, "full_name": "name"})

        assert config.key_fields == ("name",)
        assert len(cache) == 2

    def test_fingerprint_ignores_unmapped_and_order(self):
        assert mapping_fingerprint({"a": 1, "b": 2, "c": None}) == mapping_fingerprint({"b": 3, "a": 4})


# ── Key Normalization ────────────────────────────────────────────────────────


class TestCompositeKey:
    def test_domain_normalization(self):
        assert normalize_domain("https://www.Acme.com/about") == "acme.com"
        assert normalize_domain("ACME.com") == "acme.com"

    def test_amount_normalization(self):
        assert normalize_amount(50000) == "50000"
        assert normalize_amount("50,000.50") == "50000.5"
        assert normalize_amount(None) == "0"

    def test_deal_key_from_record_and_row(self):
        record = DealRecord(
            tenant_id=TENANT,
            source="crm",
            name="  Acme   Renewal ",
            amount=50000.0,
            close_date=datetime(2026, 3, 31, 15, tzinfo=timezone.utc),
        )
        row = {"name": "acme renewal", "amount": "50000", "close_date": "2026-03-31T00:00:00"}
        fields = ("name", "amount", "close_date")
        assert composite_key("deal", fields, record) == composite_key("deal", fields, row)

    def test_contact_name_built_from_parts(self):
        record = ContactRecord(tenant_id=TENANT, source="crm", first_name="Ada", last_name="Lovelace")
        assert composite_key("contact", ("name",), record) == "ada lovelace"

    def test_empty_leading_field_has_no_key(self):
        assert composite_key("contact", ("email",), {"email": ""}) is None


# ── find_duplicates ──────────────────────────────────────────────────────────


class TestFindDuplicates:
    @pytest.mark.asyncio
    async def test_email_matches_case_insensitively(self):
        resolver = DedupResolver()
        lookup = _lookup(
            [
                {"id": "row-1", "source_id": "101", "email": "Ada@Example.com"},
                {"id": "row-2", "source_id": "102", "email": "grace@example.com"},
            ]
        )
        incoming = [
            ContactRecord(tenant_id=TENANT, source="crm", email="ada@example.com"),
            ContactRecord(tenant_id=TENANT, source="crm", email="new@example.com"),
        ]

        matches = await resolver.find_duplicates(
            TENANT, "contact", DedupStrategy.COMPOSITE, ("email",), incoming, lookup
        )

        assert len(matches) == 1
        assert matches[0].incoming_index == 0
        assert matches[0].existing_id == "row-1"
        assert matches[0].existing_source_id == "101"
        assert matches[0].confidence == 0.95
        assert lookup.calls == [(TENANT, "contact")]

    @pytest.mark.asyncio
    async def test_external_id_matches_on_source_id(self):
        resolver = DedupResolver()
        lookup = _lookup([{"id": "row-9", "source_id": "9"}])
        incoming = [DealRecord(tenant_id=TENANT, source="crm", source_id="9")]

        matches = await resolver.find_duplicates(
            TENANT, "deal", DedupStrategy.EXTERNAL_ID, ("external_id",), incoming, lookup
        )

        assert [(m.existing_id, m.confidence) for m in matches] == [("row-9", 1.0)]

    @pytest.mark.asyncio
    async def test_strategy_none_never_queries(self):
        lookup = _lookup([{"id": "x", "source_id": "1"}])
        matches = await DedupResolver().find_duplicates(
            TENANT, "task", DedupStrategy.NONE, (), [object()], lookup
        )
        assert matches == []
        assert lookup.calls == []


# ── resolve_identities ───────────────────────────────────────────────────────


class TestResolveIdentities:
    @pytest.mark.asyncio
    async def test_matched_record_reuses_stored_source_id(self):
        resolver = DedupResolver()
        config = DedupResolver.detect_strategy("account", {"domain": "domain"})
        lookup = _lookup([{"id": "row-1", "source_id": "dedup:abc", "domain": "acme.com"}])
        records = [
            AccountRecord(tenant_id=TENANT, source="csv", name="Acme", domain="https://acme.com"),
            AccountRecord(tenant_id=TENANT, source="csv", name="Globex", domain="globex.io"),
            AccountRecord(tenant_id=TENANT, source="csv", source_id="keep-me", domain="initech.com"),
        ]

        resolved, matches = await resolver.resolve_identities(TENANT, "account", records, config, lookup)

        assert resolved[0].source_id == "dedup:abc"
        assert resolved[1].source_id == dedup_source_id("account", "globex.io")
        assert resolved[2].source_id == "keep-me"
        assert [m.incoming_index for m in matches] == [0]

    @pytest.mark.asyncio
    async def test_same_key_gets_same_id_across_runs(self):
        resolver = DedupResolver()
        config = DedupResolver.detect_strategy("contact", {"email": "email"})
        record = ContactRecord(tenant_id=TENANT, source="csv", email="ada@example.com")

        first, _ = await resolver.resolve_identities(TENANT, "contact", [record], config, _lookup([]))
        second, _ = await resolver.resolve_identities(TENANT, "contact", [record], config, _lookup([]))

        assert first[0].source_id == second[0].source_id
        assert first[0].source_id.startswith("dedup:")

    @pytest.mark.asyncio
    async def test_unkeyed_records_get_unique_ids(self):
        resolver = DedupResolver()
        config = DedupResolver.detect_strategy("task", {})
        records = [
            DealRecord(tenant_id=TENANT, source="csv", name="a"),
            DealRecord(tenant_id=TENANT, source="csv", name="a"),
        ]

        resolved, matches = await resolver.resolve_identities(TENANT, "deal", records, config, _lookup([]))

        assert matches == []
        assert resolved[0].source_id != resolved[1].source_id
        assert all(r.source_id.startswith("dedup:") for r in resolved)

    @pytest.mark.asyncio
    async def test_nothing_pending_skips_lookup(self):
        lookup = _lookup([])
        records = [DealRecord(tenant_id=TENANT, source="crm", source_id="1")]
        config = DedupResolver.detect_strategy("deal", {"external_id": "id"})

        resolved, matches = await DedupResolver().resolve_identities(TENANT, "deal", records, config, lookup)

        assert resolved == records
        assert matches == []
        assert lookup.calls == []


# ── TenantTTLCache ───────────────────────────────────────────────────────────


class TestTenantTTLCache:
    def test_entries_expire(self, clock):
        cache: TenantTTLCache[str] = TenantTTLCache(ttl_seconds=10, clock=clock)
        cache.set(TENANT, "k", "v")
        assert cache.get(TENANT, "k") == "v"
        clock.now += 10
        assert cache.get(TENANT, "k") is None
        assert cache.stats()["misses"] == 1

    def test_tenants_isolated(self):
        cache: TenantTTLCache[str] = TenantTTLCache(ttl_seconds=60)
        cache.set(TENANT, "k", "alpha")
        cache.set("tenant-beta", "k", "beta")
        assert cache.get(TENANT, "k") == "alpha"
        assert cache.invalidate_tenant(TENANT) == 1
        assert cache.get(TENANT, "k") is None
        assert cache.get("tenant-beta", "k") == "beta"

    def test_lru_eviction(self):
        cache: TenantTTLCache[int] = TenantTTLCache(ttl_seconds=60, maxsize=2)
        cache.set(TENANT, "a", 1)
        cache.set(TENANT, "b", 2)
        cache.get(TENANT, "a")
        cache.set(TENANT, "c", 3)
        assert cache.get(TENANT, "b") is None
        assert cache.get(TENANT, "a") == 1
        assert len(cache) == 2

    def test_default_ttl_from_settings(self, monkeypatch):
        monkeypatch.setenv("DEDUP_CACHE_TTL_SECONDS", "120")
        from src.syncengine.config import get_settings

        get_settings.cache_clear()
        assert TenantTTLCache().ttl_seconds == 120
