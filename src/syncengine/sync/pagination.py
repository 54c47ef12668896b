"""Paginated collection with bounded error tolerance.

PaginatedCollector drives a connector-supplied ``fetch_page(page_index,
cursor)`` coroutine until the source runs dry, max_pages is reached or too
many consecutive pages fail. It never raises for page failures: whatever was
accumulated is returned with the errors and the reason it stopped.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from src.syncengine.sync.errors import NON_RETRYABLE_ERRORS
from src.syncengine.sync.observer import SyncObserver, describe, resolve_observer
from src.syncengine.sync.schemas import CollectResult, PageResult, PaginationConfig, StopReason

logger = structlog.get_logger(__name__)

FetchPage = Callable[[int, Any], Awaitable[PageResult]]


class PaginatedCollector:
    """Accumulates records across pages for one sync run.

    Args:
        sleep: Inter-page delay coroutine. Injectable for tests.
        observer: Receives page_fetched / page_failed events.
    """

    def __init__(
        self,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        observer: SyncObserver | None = None,
    ) -> None:
        self._sleep = sleep
        self._observer = resolve_observer(observer)

    async def collect(
        self,
        fetch_page: FetchPage,
        config: PaginationConfig | None = None,
        *,
        start_cursor: Any = None,
    ) -> CollectResult:
        """Walk pages starting at ``start_cursor``.

        A failed page keeps the current cursor and moves on to the next page
        index; PermanentClientError and ConfigurationError stop immediately.
        """
        config = config or PaginationConfig.from_settings()
        records: list[Any] = []
        errors: list[str] = []
        cursor = start_cursor
        pages_fetched = 0
        consecutive_errors = 0
        page_index = 0
        stop_reason = StopReason.MAX_PAGES

        while page_index < config.max_pages:
            try:
                page = await fetch_page(page_index, cursor)
            except NON_RETRYABLE_ERRORS as exc:
                errors.append(f"page {page_index}: {describe(exc)}")
                self._observer.page_failed(page_index, describe(exc), consecutive_errors + 1)
                stop_reason = StopReason.FATAL_ERROR
                break
            except Exception as exc:
                consecutive_errors += 1
                errors.append(f"page {page_index}: {describe(exc)}")
                self._observer.page_failed(page_index, describe(exc), consecutive_errors)
                if consecutive_errors >= config.consecutive_error_limit:
                    logger.error(
                        "pagination.error_limit_reached",
                        limit=config.consecutive_error_limit,
                        records=len(records),
                    )
                    stop_reason = StopReason.ERROR_LIMIT
                    break
                page_index += 1
                continue

            consecutive_errors = 0
            page_index += 1

            if not page.records:
                stop_reason = StopReason.EXHAUSTED
                break

            records.extend(page.records)
            pages_fetched += 1
            self._observer.page_fetched(page_index - 1, len(page.records), len(records))
            if config.on_progress is not None:
                config.on_progress(len(records), pages_fetched)

            if page.next_cursor is None:
                stop_reason = StopReason.EXHAUSTED
                break
            cursor = page.next_cursor

            if page_index < config.max_pages and config.page_delay_ms > 0:
                await self._sleep(config.page_delay_ms / 1000)

        logger.info(
            "pagination.complete",
            records=len(records),
            pages=pages_fetched,
            errors=len(errors),
            stop_reason=stop_reason.value,
        )
        return CollectResult(
            records=records,
            pages_fetched=pages_fetched,
            errors=errors,
            stop_reason=stop_reason,
            last_cursor=cursor,
        )


async def collect(
    fetch_page: FetchPage,
    config: PaginationConfig | None = None,
    *,
    observer: SyncObserver | None = None,
) -> CollectResult:
    """Module-level shortcut for ``PaginatedCollector().collect``."""
    return await PaginatedCollector(observer=observer).collect(fetch_page, config)
