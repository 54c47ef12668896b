"""Tenant-scoped in-memory TTL cache.

Caller-owned: whoever needs a cache (e.g. DedupResolver for strategy
configs) creates one and passes it in, so there is no process-wide mutable
state. Keys always lead with tenant_id, which lets a tenant's entries be
dropped as a group when its field mappings change.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from typing import Any, Generic, TypeVar

from src.syncengine.config import get_settings

V = TypeVar("V")


class TenantTTLCache(Generic[V]):
    """LRU cache with per-entry expiry and tenant-scoped keys.

    Args:
        ttl_seconds: Entry lifetime; defaults to DEDUP_CACHE_TTL_SECONDS.
        maxsize: Maximum entries before the least recently used is evicted.
        clock: Monotonic clock in seconds. Injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float | None = None,
        maxsize: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = (
            ttl_seconds if ttl_seconds is not None else get_settings().DEDUP_CACHE_TTL_SECONDS
        )
        self.maxsize = maxsize
        self._clock = clock
        self._entries: OrderedDict[tuple[str, Hashable], tuple[float, V]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, tenant_id: str, key: Hashable) -> V | None:
        full_key = (tenant_id, key)
        entry = self._entries.get(full_key)
        if entry is None:
            self.misses += 1
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[full_key]
            self.misses += 1
            return None
        self._entries.move_to_end(full_key)
        self.hits += 1
        return value

    def set(self, tenant_id: str, key: Hashable, value: V) -> None:
        full_key = (tenant_id, key)
        self._entries[full_key] = (self._clock() + self.ttl_seconds, value)
        self._entries.move_to_end(full_key)
        while len(self._entries) > self.maxsize:
            self._entries.popitem(last=False)

    def invalidate_tenant(self, tenant_id: str) -> int:
        """Drop every entry for ``tenant_id``. Returns the number removed."""
        keys = [k for k in self._entries if k[0] == tenant_id]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "size": len(self._entries),
            "maxsize": self.maxsize,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / lookups if lookups else 0.0,
        }
