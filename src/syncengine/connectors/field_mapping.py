"""Property mappings for the CRM REST connector.

Defines:
- CRM_PROPERTY_MAP: Maps normalized field names to vendor property names and
  sanitizer types, per entity type.
- SYSTEM_PROPERTIES: Vendor bookkeeping properties never treated as custom fields.
- from_source_properties(): Splits a vendor properties dict into sanitized
  normalized values and the residual custom_fields map.
- dedup_field_mapping(): The field mapping handed to DedupResolver.
"""

from __future__ import annotations

from typing import Any

from src.syncengine.sync.sanitize import custom_fields_from, sanitize_for_db


# ── CRM Property Mappings ──────────────────────────────────────────────────

CRM_PROPERTY_MAP: dict[str, dict[str, dict[str, str]]] = {
    "deal": {
        "name": {"property": "dealname", "type": "text"},
        "amount": {"property": "amount", "type": "numeric"},
        "currency": {"property": "deal_currency_code", "type": "text"},
        "stage": {"property": "dealstage", "type": "text"},
        "close_date": {"property": "closedate", "type": "date"},
        "owner_name": {"property": "owner_name", "type": "text"},
        "account_name": {"property": "company_name", "type": "text"},
    },
    "contact": {
        "email": {"property": "email", "type": "text"},
        "first_name": {"property": "firstname", "type": "text"},
        "last_name": {"property": "lastname", "type": "text"},
        "phone": {"property": "phone", "type": "text"},
        "title": {"property": "jobtitle", "type": "text"},
        "company": {"property": "company", "type": "text"},
    },
    "account": {
        "name": {"property": "name", "type": "text"},
        "domain": {"property": "domain", "type": "text"},
        "industry": {"property": "industry", "type": "text"},
        "employee_count": {"property": "numberofemployees", "type": "integer"},
    },
}

SYSTEM_PROPERTIES = frozenset(
    {"hs_object_id", "createdate", "lastmodifieddate", "hs_lastmodifieddate"}
)


# ── Conversion Functions ───────────────────────────────────────────────────


def from_source_properties(
    properties: dict[str, Any],
    property_map: dict[str, dict[str, str]],
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Convert vendor properties to normalized values plus custom fields.

    Args:
        properties: Vendor ``properties`` dict for one object.
        property_map: One entity's entry from CRM_PROPERTY_MAP.

    Returns:
        (normalized field -> sanitized value, unmapped populated properties).
    """
    values: dict[str, Any] = {}
    for field_name, mapping in property_map.items():
        values[field_name] = sanitize_for_db(properties.get(mapping["property"]), mapping["type"])

    mapped = {m["property"] for m in property_map.values()} | SYSTEM_PROPERTIES
    return values, custom_fields_from(properties, mapped)


def dedup_field_mapping(
    property_map: dict[str, dict[str, str]], external_id: str | None = "id"
) -> dict[str, Any]:
    """Normalized field -> source property, including the external id when present."""
    mapping: dict[str, Any] = {name: spec["property"] for name, spec in property_map.items()}
    mapping["external_id"] = external_id
    return mapping
