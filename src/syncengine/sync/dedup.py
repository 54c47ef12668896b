"""Dedup strategy selection and duplicate matching within one source.

Records with a vendor ID are identified by (tenant_id, source, source_id).
Records without one need a fallback identity. DedupResolver picks the
strongest available key from the connector's field mapping, matches
incoming records against stored rows on that key, and assigns every record
a stable source_id so the upsert stays keyed on the same constraint.

Strategy selection (first match wins):
- external_id mapped               -> external_id, confidence 1.0
- deal: name + amount + close_date -> composite, 0.85 (renames break matching)
- contact: email                   -> composite [email], 0.95
- contact: a name field            -> composite [name], 0.60 (may duplicate)
- account: domain                  -> composite [domain], 0.90
- account: name                    -> composite [name], 0.70 (name collisions)
- otherwise                        -> none (re-import duplicates)
"""

from __future__ import annotations

import hashlib
import json
import re
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import date, datetime
from typing import Any

import structlog

from src.syncengine.sync.cache import TenantTTLCache
from src.syncengine.sync.schemas import DedupConfig, DedupMatch, DedupStrategy, NormalizedRecord

logger = structlog.get_logger(__name__)

ExistingLookup = Callable[[str, str], Awaitable[Sequence[Mapping[str, Any]]]]

DEDUP_SOURCE_ID_PREFIX = "dedup:"

CONTACT_NAME_FIELDS = ("name", "full_name", "first_name")

# Fixed confidence per (entity type, key fields).
_COMPOSITE_CONFIDENCE: dict[tuple[str, tuple[str, ...]], float] = {
    ("deal", ("name", "amount", "close_date")): 0.85,
    ("contact", ("email",)): 0.95,
    ("contact", ("name",)): 0.60,
    ("account", ("domain",)): 0.90,
    ("account", ("name",)): 0.70,
}


# ── Key Normalization ───────────────────────────────────────────────────────


def normalize_text(value: Any) -> str:
    """Lowercase and collapse whitespace."""
    if value is None:
        return ""
    return re.sub(r"\s+", " ", str(value)).strip().lower()


def normalize_domain(value: Any) -> str:
    """Reduce a URL or domain to its bare host: no protocol, www. or path."""
    text = normalize_text(value)
    text = re.sub(r"^https?://", "", text)
    text = re.sub(r"^www\.", "", text)
    return re.sub(r"/.*$", "", text).strip()


def normalize_amount(value: Any) -> str:
    if value is None or value == "":
        return "0"
    try:
        number = float(str(value).replace(",", ""))
    except ValueError:
        return normalize_text(value)
    return f"{number:.2f}".rstrip("0").rstrip(".")


def normalize_date(value: Any) -> str:
    """Truncate a date/datetime/ISO string to YYYY-MM-DD."""
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return value.isoformat()[:10]
    return str(value).strip()[:10]


def _field(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def _contact_name(record: Any) -> str:
    full = _field(record, "full_name") or _field(record, "name")
    if not full:
        parts = [_field(record, "first_name"), _field(record, "last_name")]
        full = " ".join(p for p in parts if p)
    return normalize_text(full)


def composite_key(entity_type: str, key_fields: Sequence[str], record: Any) -> str | None:
    """Build the normalized composite key for ``record``.

    Returns None when the leading key field is empty, since such a record
    cannot be matched reliably.
    """
    parts: list[str] = []
    for name in key_fields:
        if name == "domain":
            parts.append(normalize_domain(_field(record, name)))
        elif name == "amount":
            parts.append(normalize_amount(_field(record, name)))
        elif name in ("close_date",):
            parts.append(normalize_date(_field(record, name)))
        elif name == "name" and entity_type == "contact":
            parts.append(_contact_name(record))
        else:
            parts.append(normalize_text(_field(record, name)))
    if not parts or not parts[0]:
        return None
    return "|".join(parts)


def dedup_source_id(entity_type: str, key: str) -> str:
    """Deterministic source_id for a record identified by composite key."""
    digest = hashlib.sha1(f"{entity_type}|{key}".encode()).hexdigest()
    return f"{DEDUP_SOURCE_ID_PREFIX}{digest}"


def mapping_fingerprint(field_mapping: Mapping[str, Any]) -> str:
    """Stable fingerprint of which fields a mapping covers."""
    mapped = sorted(k for k, v in field_mapping.items() if v is not None)
    return hashlib.sha1(json.dumps(mapped).encode()).hexdigest()


# ── Resolver ────────────────────────────────────────────────────────────────


class DedupResolver:
    """Chooses dedup strategies and resolves record identities.

    Args:
        cache: Caller-owned cache for DedupConfigs, keyed per tenant by
            (entity type, mapping fingerprint). No caching when omitted.
    """

    def __init__(self, cache: TenantTTLCache[DedupConfig] | None = None) -> None:
        self._cache = cache

    @staticmethod
    def detect_strategy(entity_type: str, field_mapping: Mapping[str, Any]) -> DedupConfig:
        """Pick the strongest dedup key the field mapping supports.

        Args:
            entity_type: deal, contact, account, or any other entity type.
            field_mapping: Normalized field name -> source field (None = unmapped).

        Returns:
            DedupConfig. Deterministic for the same mapping.
        """

        def mapped(name: str) -> bool:
            return field_mapping.get(name) is not None

        if mapped("external_id"):
            return DedupConfig(
                strategy=DedupStrategy.EXTERNAL_ID,
                key_fields=("external_id",),
                confidence=1.0,
            )

        if entity_type == "deal":
            if mapped("name") and mapped("amount") and mapped("close_date"):
                key = ("name", "amount", "close_date")
                return DedupConfig(
                    strategy=DedupStrategy.COMPOSITE,
                    key_fields=key,
                    confidence=_COMPOSITE_CONFIDENCE[("deal", key)],
                    warning=(
                        "No record ID field mapped. Using name + amount + close_date for "
                        "duplicate detection; renamed deals will not be recognized."
                    ),
                )

        elif entity_type == "contact":
            if mapped("email"):
                return DedupConfig(
                    strategy=DedupStrategy.COMPOSITE,
                    key_fields=("email",),
                    confidence=_COMPOSITE_CONFIDENCE[("contact", ("email",))],
                )
            if any(mapped(name) for name in CONTACT_NAME_FIELDS):
                return DedupConfig(
                    strategy=DedupStrategy.COMPOSITE,
                    key_fields=("name",),
                    confidence=_COMPOSITE_CONFIDENCE[("contact", ("name",))],
                    warning="No email or record ID field mapped. Duplicate contacts may be created.",
                )

        elif entity_type == "account":
            if mapped("domain"):
                return DedupConfig(
                    strategy=DedupStrategy.COMPOSITE,
                    key_fields=("domain",),
                    confidence=_COMPOSITE_CONFIDENCE[("account", ("domain",))],
                )
            if mapped("name"):
                return DedupConfig(
                    strategy=DedupStrategy.COMPOSITE,
                    key_fields=("name",),
                    confidence=_COMPOSITE_CONFIDENCE[("account", ("name",))],
                    warning=(
                        "No domain or record ID field mapped. Using company name for duplicate "
                        "detection; similar names may collide."
                    ),
                )

        return DedupConfig(
            strategy=DedupStrategy.NONE,
            key_fields=(),
            confidence=0.0,
            warning=(
                "Cannot detect duplicates: no ID, email, domain or name field mapped. "
                "Re-importing will create duplicate records."
            ),
        )

    def strategy_for(
        self, tenant_id: str, entity_type: str, field_mapping: Mapping[str, Any]
    ) -> DedupConfig:
        """detect_strategy with per-tenant caching."""
        cache_key = (entity_type, mapping_fingerprint(field_mapping))
        if self._cache is not None:
            cached = self._cache.get(tenant_id, cache_key)
            if cached is not None:
                return cached

        config = self.detect_strategy(entity_type, field_mapping)
        if config.warning:
            logger.warning(
                "dedup.weak_strategy",
                tenant_id=tenant_id,
                entity_type=entity_type,
                strategy=config.strategy.value,
                warning=config.warning,
            )
        if self._cache is not None:
            self._cache.set(tenant_id, cache_key, config)
        return config

    @staticmethod
    def confidence_for(entity_type: str, strategy: DedupStrategy, key_fields: Sequence[str]) -> float:
        if strategy == DedupStrategy.EXTERNAL_ID:
            return 1.0
        if strategy == DedupStrategy.NONE:
            return 0.0
        return _COMPOSITE_CONFIDENCE.get((entity_type, tuple(key_fields)), 0.5)

    async def find_duplicates(
        self,
        tenant_id: str,
        entity_type: str,
        strategy: DedupStrategy,
        key_fields: Sequence[str],
        incoming: Sequence[Any],
        existing_lookup: ExistingLookup,
    ) -> list[DedupMatch]:
        """Match incoming records to stored rows on the strategy's key.

        Args:
            existing_lookup: ``await existing_lookup(tenant_id, entity_type)``
                returns stored rows as mappings with ``id``, ``source_id`` and
                the key columns.

        Returns:
            One DedupMatch per incoming record that collides with a stored row.
        """
        if strategy == DedupStrategy.NONE or not incoming:
            return []

        existing = await existing_lookup(tenant_id, entity_type)
        confidence = self.confidence_for(entity_type, strategy, key_fields)

        if strategy == DedupStrategy.EXTERNAL_ID:
            index = {str(row["source_id"]): row for row in existing if row.get("source_id")}

            def key_of(record: Any) -> str | None:
                value = _field(record, "source_id") or _field(record, "external_id")
                return str(value) if value else None

        else:
            index = {}
            for row in existing:
                key = composite_key(entity_type, key_fields, row)
                if key is not None:
                    index.setdefault(key, row)

            def key_of(record: Any) -> str | None:
                return composite_key(entity_type, key_fields, record)

        matches: list[DedupMatch] = []
        for i, record in enumerate(incoming):
            key = key_of(record)
            row = index.get(key) if key is not None else None
            if row is None:
                continue
            matches.append(
                DedupMatch(
                    incoming_index=i,
                    existing_id=row["id"],
                    existing_source_id=row.get("source_id"),
                    strategy=strategy,
                    confidence=confidence,
                )
            )

        logger.info(
            "dedup.matches_found",
            tenant_id=tenant_id,
            entity_type=entity_type,
            strategy=strategy.value,
            incoming=len(incoming),
            matches=len(matches),
        )
        return matches

    async def resolve_identities(
        self,
        tenant_id: str,
        entity_type: str,
        records: Sequence[NormalizedRecord],
        config: DedupConfig,
        existing_lookup: ExistingLookup,
    ) -> tuple[list[NormalizedRecord], list[DedupMatch]]:
        """Give every record lacking a source_id a stable one.

        A record matching a stored row takes that row's source_id. Otherwise
        it gets ``dedup:<sha1>`` of its composite key, or a random id when no
        key can be built (strategy none or empty key fields).
        """
        pending = [i for i, r in enumerate(records) if not r.source_id]
        if not pending:
            return list(records), []

        candidates = [records[i] for i in pending]
        key_fields = config.key_fields
        strategy = config.strategy
        if strategy == DedupStrategy.EXTERNAL_ID:
            # Without a source_id there is no external ID to match on.
            strategy = DedupStrategy.NONE

        matches = await self.find_duplicates(
            tenant_id, entity_type, strategy, key_fields, candidates, existing_lookup
        )
        matched = {m.incoming_index: m for m in matches}

        resolved = list(records)
        unkeyed = 0
        for local_index, record_index in enumerate(pending):
            record = records[record_index]
            match = matched.get(local_index)
            if match is not None and match.existing_source_id:
                source_id = match.existing_source_id
            else:
                key = (
                    composite_key(entity_type, key_fields, record)
                    if strategy == DedupStrategy.COMPOSITE
                    else None
                )
                if key is not None:
                    source_id = dedup_source_id(entity_type, key)
                else:
                    source_id = f"{DEDUP_SOURCE_ID_PREFIX}{uuid.uuid4().hex}"
                    unkeyed += 1
            resolved[record_index] = record.model_copy(update={"source_id": source_id})

        if unkeyed:
            logger.warning(
                "dedup.unkeyed_records",
                tenant_id=tenant_id,
                entity_type=entity_type,
                count=unkeyed,
            )
        return resolved, [
            m.model_copy(update={"incoming_index": pending[m.incoming_index]}) for m in matches
        ]
