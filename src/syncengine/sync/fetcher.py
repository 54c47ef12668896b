"""HTTP fetch with response classification and bounded retry.

Classification per attempt:
- 2xx: success, returned to the caller
- 429: RateLimitError, retried after Retry-After (seconds or HTTP-date) or backoff
- other 4xx: PermanentClientError, raised immediately without retry
- 5xx and transport failures: TransientNetworkError, retried with backoff

Retries use tenacity's AsyncRetrying with a wait strategy that honors the
vendor's Retry-After header. Every attempt can go through a RateLimiter.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt
from tenacity.wait import wait_base

from src.syncengine.config import get_settings
from src.syncengine.sync.errors import PermanentClientError, RateLimitError, TransientNetworkError
from src.syncengine.sync.observer import SyncObserver, describe, resolve_observer
from src.syncengine.sync.rate_limiter import RateLimiter
from src.syncengine.sync.schemas import RetryPolicy

logger = structlog.get_logger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header into seconds.

    Accepts delta-seconds ("30") or an HTTP-date. Returns None when the
    header is missing or unparseable; dates in the past yield 0.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max((when - now).total_seconds(), 0.0)


class wait_retry_after(wait_base):
    """Exponential backoff that defers to a vendor's Retry-After hint.

    Delay before retry n is base_delay_ms * backoff_factor^(n-1), capped at
    max_delay_ms.
    """

    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitError) and exc.retry_after is not None:
            return exc.retry_after
        delay_ms = self.policy.base_delay_ms * (
            self.policy.backoff_factor ** (retry_state.attempt_number - 1)
        )
        return min(delay_ms, self.policy.max_delay_ms) / 1000


def classify_response(response: httpx.Response, url: str) -> httpx.Response:
    """Return a 2xx response or raise the matching SyncError."""
    status = response.status_code
    if 200 <= status < 300:
        return response
    if status == 429:
        raise RateLimitError(
            f"Rate limited by {url}",
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    if status >= 500:
        raise TransientNetworkError(f"HTTP {status} from {url}", status_code=status)
    raise PermanentClientError(f"HTTP {status} from {url}: {response.text[:200]}", status)


def _outcome_for(exc: BaseException | None) -> str:
    if exc is None:
        return "success"
    if isinstance(exc, RateLimitError):
        return "rate_limited"
    if isinstance(exc, PermanentClientError):
        return "client_error"
    if isinstance(exc, TransientNetworkError) and exc.status_code is not None:
        return "server_error"
    return "network_error"


async def fetch_with_retry(
    url: str,
    options: Mapping[str, Any] | None = None,
    policy: RetryPolicy | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    limiter: RateLimiter | None = None,
    sleep: SleepFn = asyncio.sleep,
    observer: SyncObserver | None = None,
) -> httpx.Response:
    """Issue one HTTP request, retrying transient failures.

    Args:
        url: Absolute URL (or path relative to the client's base_url).
        options: Request options: ``method`` (default GET) plus any keyword
            accepted by ``httpx.AsyncClient.request`` (headers, params, json...).
        policy: Retry policy; defaults from settings.
        client: Shared client. A short-lived one is created when omitted.
        limiter: Rate limiter every attempt must pass through.
        sleep: Backoff sleep. Injectable for tests.
        observer: Receives fetch_attempt and retry_scheduled events.

    Returns:
        The successful (2xx) response.

    Raises:
        PermanentClientError: Non-429 4xx; never retried.
        RateLimitError / TransientNetworkError: Last error after max_attempts.
    """
    policy = policy or RetryPolicy.from_settings()
    observer = resolve_observer(observer)
    request_kwargs = dict(options or {})
    method = request_kwargs.pop("method", "GET")

    if client is None:
        async with httpx.AsyncClient(timeout=get_settings().HTTP_TIMEOUT_SECONDS) as owned:
            return await fetch_with_retry(
                url,
                {"method": method, **request_kwargs},
                policy,
                client=owned,
                limiter=limiter,
                sleep=sleep,
                observer=observer,
            )

    async def _attempt(attempt_number: int) -> httpx.Response:
        if limiter is not None:
            await limiter.acquire()
        status_code: int | None = None
        try:
            try:
                response = await client.request(method, url, **request_kwargs)
            except httpx.TimeoutException as exc:
                raise TransientNetworkError(f"Timeout calling {url}: {describe(exc)}") from exc
            except httpx.TransportError as exc:
                raise TransientNetworkError(f"Network error calling {url}: {describe(exc)}") from exc
            status_code = response.status_code
            result = classify_response(response, url)
        except (TransientNetworkError, PermanentClientError) as exc:
            observer.fetch_attempt(url, attempt_number, _outcome_for(exc), status_code)
            raise
        observer.fetch_attempt(url, attempt_number, "success", status_code)
        return result

    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        observer.retry_scheduled(url, retry_state.attempt_number, delay, describe(exc))

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_retry_after(policy),
        retry=retry_if_exception_type(TransientNetworkError),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )

    async for attempt in retrying:
        with attempt:
            response = await _attempt(attempt.retry_state.attempt_number)
    return response


class RetryingFetcher:
    """Connector-facing wrapper binding a client, limiter and retry policy.

    Usage:
        fetcher = RetryingFetcher(base_url="https://api.vendor.com", limiter=limiter)
        response = await fetcher.fetch("/v3/objects/deals", {"params": {"limit": 100}})
        await fetcher.aclose()
    """

    def __init__(
        self,
        *,
        base_url: str = "",
        headers: Mapping[str, str] | None = None,
        policy: RetryPolicy | None = None,
        limiter: RateLimiter | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: SleepFn = asyncio.sleep,
        observer: SyncObserver | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers=dict(headers or {}),
            timeout=get_settings().HTTP_TIMEOUT_SECONDS,
        )
        self._policy = policy or RetryPolicy.from_settings()
        self._limiter = limiter
        self._sleep = sleep
        self._observer = observer

    @property
    def limiter(self) -> RateLimiter | None:
        return self._limiter

    async def fetch(self, url: str, options: Mapping[str, Any] | None = None) -> httpx.Response:
        return await fetch_with_retry(
            url,
            options,
            self._policy,
            client=self._client,
            limiter=self._limiter,
            sleep=self._sleep,
            observer=self._observer,
        )

    async def fetch_json(self, url: str, options: Mapping[str, Any] | None = None) -> Any:
        response = await self.fetch(url, options)
        return response.json()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
