"""Per-record transform with failure isolation.

One malformed vendor record must never abort a sync: every item is
transformed on its own, and failures are collected with the record, the
error text and the record id so they can be reported afterwards.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any, TypeVar

import structlog

from src.syncengine.sync.observer import SyncObserver, describe, resolve_observer
from src.syncengine.sync.schemas import TransformFailure, TransformResult

logger = structlog.get_logger(__name__)

TIn = TypeVar("TIn")
TOut = TypeVar("TOut")

# Above either threshold the first failures are logged at error level.
HIGH_FAILURE_COUNT = 10
HIGH_FAILURE_RATIO = 0.1


def transform_with_capture(
    items: Iterable[TIn],
    transform_fn: Callable[[TIn], TOut],
    label: str,
    id_fn: Callable[[TIn], Any] | None = None,
    *,
    observer: SyncObserver | None = None,
) -> TransformResult:
    """Transform ``items`` one by one, capturing failures.

    Args:
        items: Raw vendor records.
        transform_fn: Maps one raw record to a normalized record.
        label: Name used in logs (e.g. "crm deals").
        id_fn: Extracts a record id for error reporting.
        observer: Receives a transform_failures event when anything failed.

    Returns:
        TransformResult with succeeded records, failures and the attempt count.
    """
    succeeded: list[Any] = []
    failed: list[TransformFailure] = []
    total = 0

    for item in items:
        total += 1
        try:
            succeeded.append(transform_fn(item))
        except Exception as exc:
            record_id = _safe_id(item, id_fn)
            failed.append(TransformFailure(record=item, error=describe(exc), record_id=record_id))

    if failed:
        failure_rate = round(len(failed) / total * 100, 1)
        logger.warning(
            "transform.failures",
            label=label,
            failed=len(failed),
            total=total,
            failure_rate=failure_rate,
            first_error=failed[0].error,
            first_record_id=failed[0].record_id,
        )
        if len(failed) > HIGH_FAILURE_COUNT or len(failed) / total > HIGH_FAILURE_RATIO:
            logger.error(
                "transform.high_failure_rate",
                label=label,
                failure_rate=failure_rate,
                first_failures=[{"id": f.record_id, "error": f.error} for f in failed[:5]],
            )
        resolve_observer(observer).transform_failures(label, failed, total)

    return TransformResult(succeeded=succeeded, failed=failed, total_attempted=total)


def _safe_id(item: Any, id_fn: Callable[[Any], Any] | None) -> str | None:
    if id_fn is None:
        return None
    try:
        value = id_fn(item)
    except Exception as exc:
        logger.debug("transform.id_extraction_failed", error=describe(exc))
        return None
    return None if value is None else str(value)
