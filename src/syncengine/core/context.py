"""Sync run context propagation via Python contextvars.

The SyncContext is set by the SyncRunner at the start of each run and is
accessible anywhere in the call stack via get_current_sync(). Log lines and
Sentry events emitted during a run are tagged with the tenant and connector
without threading them through every call.
"""

from __future__ import annotations

import contextvars
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

import structlog

# ── Sync Context ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SyncContext:
    """Immutable context for the current sync run."""

    tenant_id: str
    connector_name: str
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))


_sync_context: contextvars.ContextVar[SyncContext] = contextvars.ContextVar("sync_context")


def get_current_sync() -> SyncContext:
    """Get the context for the current sync run.

    Raises RuntimeError if no sync context has been set (i.e., the call
    is not within a sync run).
    """
    try:
        return _sync_context.get()
    except LookupError:
        raise RuntimeError("No sync context set -- call is not within a sync run")


def set_sync_context(ctx: SyncContext) -> contextvars.Token[SyncContext]:
    """Set the sync context for the current task. Returns a token for reset."""
    return _sync_context.set(ctx)


@contextmanager
def sync_context(tenant_id: str, connector_name: str) -> Iterator[SyncContext]:
    """Scope a sync run: set the contextvar and bind structlog context.

    Usage:
        with sync_context(tenant_id, "hubspot") as ctx:
            ...  # every log line carries tenant_id, connector, run_id
    """
    ctx = SyncContext(tenant_id=tenant_id, connector_name=connector_name)
    token = set_sync_context(ctx)
    try:
        with structlog.contextvars.bound_contextvars(
            tenant_id=tenant_id,
            connector=connector_name,
            run_id=ctx.run_id,
        ):
            yield ctx
    finally:
        _sync_context.reset(token)
