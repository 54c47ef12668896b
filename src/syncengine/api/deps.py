"""FastAPI dependency injection for sync engine stores.

The session factory lives on ``app.state`` so tests (and embedding
applications) can point the API at their own engine.
"""

from __future__ import annotations

from fastapi import Depends, Request

from src.syncengine.core.database import SessionFactory, get_session
from src.syncengine.sync.cursor import SyncCursorTracker
from src.syncengine.sync.drift import SchemaDriftDetector


async def get_session_factory(request: Request) -> SessionFactory:
    """Session factory configured on the app, defaulting to the engine singleton."""
    return getattr(request.app.state, "session_factory", None) or get_session


async def get_tracker(
    session_factory: SessionFactory = Depends(get_session_factory),
) -> SyncCursorTracker:
    return SyncCursorTracker(session_factory)


async def get_drift_detector(
    session_factory: SessionFactory = Depends(get_session_factory),
) -> SchemaDriftDetector:
    return SchemaDriftDetector(session_factory)
