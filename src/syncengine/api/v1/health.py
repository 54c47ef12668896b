"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. Readiness
verifies the database the sync engine writes to is reachable.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from src.syncengine.api.deps import get_session_factory
from src.syncengine.config import get_settings
from src.syncengine.core.database import SessionFactory

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


@router.get("/health/ready")
async def readiness_check(session_factory: SessionFactory = Depends(get_session_factory)):
    """Readiness check: returns 200 if the database answers, 503 otherwise."""
    checks: dict = {"database": "ok"}
    try:
        async for session in session_factory():
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    healthy = checks["database"] == "ok"
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if healthy else "degraded", "checks": checks},
    )
