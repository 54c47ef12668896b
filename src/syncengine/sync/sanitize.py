"""Field sanitizers for vendor payload values.

Vendors return "" for unset dates and numbers, which typed columns reject.
Every sanitizer maps None, empty strings and unparseable input to None, so a
connector's transform can assign its output straight to a typed column.
"""

from __future__ import annotations

import math
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from src.syncengine.sync.schemas import RawRecord


class FieldType(str, Enum):
    TEXT = "text"
    DATE = "date"
    NUMERIC = "numeric"
    INTEGER = "integer"
    BOOLEAN = "boolean"


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def sanitize_date(value: Any) -> datetime | None:
    """Parse an ISO-8601 string, a date, or an epoch-milliseconds number."""
    if _is_blank(value) or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def sanitize_number(value: Any) -> float | None:
    if _is_blank(value) or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            number = float(value.strip().replace(",", ""))
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def sanitize_integer(value: Any) -> int | None:
    number = sanitize_number(value)
    if number is None:
        return None
    return math.floor(number)


def sanitize_boolean(value: Any) -> bool | None:
    if _is_blank(value):
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes"):
            return True
        if lowered in ("false", "0", "no"):
            return False
    return None


def sanitize_text(value: Any, *, convert_empty_to_none: bool = True) -> str | None:
    if value is None:
        return None
    text = str(value)
    if convert_empty_to_none and text.strip() == "":
        return None
    return text


_SANITIZERS = {
    FieldType.TEXT: sanitize_text,
    FieldType.DATE: sanitize_date,
    FieldType.NUMERIC: sanitize_number,
    FieldType.INTEGER: sanitize_integer,
    FieldType.BOOLEAN: sanitize_boolean,
}


def sanitize_for_db(value: Any, target_type: FieldType | str) -> Any:
    """Sanitize ``value`` for a column of ``target_type``.

    Examples:
        sanitize_for_db("", "date") -> None
        sanitize_for_db("50000", "numeric") -> 50000.0
        sanitize_for_db("abc", "integer") -> None
    """
    return _SANITIZERS[FieldType(target_type)](value)


def sanitize_object(props: dict[str, Any]) -> dict[str, Any]:
    """Convert every empty-string value in a flat payload to None."""
    return {key: (None if value == "" else value) for key, value in props.items()}


def custom_fields_from(raw: RawRecord | dict[str, Any], mapped: set[str] | None = None) -> dict[str, Any]:
    """Collect a record's unmapped, populated fields for ``custom_fields``.

    For a RawRecord the unmapped fields are its extra attributes. For a plain
    dict every key not in ``mapped`` is considered unmapped.
    """
    if isinstance(raw, RawRecord):
        extras = raw.extra_attributes()
    else:
        extras = {k: v for k, v in raw.items() if k not in (mapped or set())}
    return {k: v for k, v in extras.items() if not _is_blank(v)}
