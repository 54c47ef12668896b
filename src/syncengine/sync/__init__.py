"""Connector sync engine -- pull, normalize and persist vendor records per tenant.

Provides the building blocks every connector runs on:
- RateLimiter: Sliding-window request limiter with vendor presets
- RetryingFetcher / fetch_with_retry: HTTP calls with backoff and Retry-After
- PaginatedCollector: Bounded page walks that keep partial progress
- transform_with_capture: Per-record transform with failure capture
- DedupResolver: Identity strategy selection and duplicate matching
- TransactionalUpserter: Chunked, atomic upserts keyed on (tenant, source, source_id)
- SyncCursorTracker: Connection status, cursor and sync log
- SchemaDriftDetector: New custom field detection and findings
- SyncRunner: One sync attempt composed from all of the above
"""

from src.syncengine.sync.cursor import SyncCursorTracker
from src.syncengine.sync.dedup import DedupResolver
from src.syncengine.sync.drift import SchemaDriftDetector
from src.syncengine.sync.errors import (
    ConfigurationError,
    PermanentClientError,
    PersistenceError,
    RateLimitError,
    SyncError,
    TransformError,
    TransientNetworkError,
)
from src.syncengine.sync.fetcher import RetryingFetcher, fetch_with_retry
from src.syncengine.sync.observer import LoggingSyncObserver, PrometheusSyncObserver, SyncObserver
from src.syncengine.sync.pagination import PaginatedCollector
from src.syncengine.sync.rate_limiter import RATE_LIMIT_PRESETS, RateLimiter
from src.syncengine.sync.runner import SyncRunner, SyncStream
from src.syncengine.sync.transform import transform_with_capture
from src.syncengine.sync.upsert import TransactionalUpserter

__all__ = [
    "RateLimiter",
    "RATE_LIMIT_PRESETS",
    "RetryingFetcher",
    "fetch_with_retry",
    "PaginatedCollector",
    "transform_with_capture",
    "DedupResolver",
    "TransactionalUpserter",
    "SyncCursorTracker",
    "SchemaDriftDetector",
    "SyncRunner",
    "SyncStream",
    "SyncObserver",
    "LoggingSyncObserver",
    "PrometheusSyncObserver",
    "SyncError",
    "TransientNetworkError",
    "RateLimitError",
    "PermanentClientError",
    "TransformError",
    "PersistenceError",
    "ConfigurationError",
]
