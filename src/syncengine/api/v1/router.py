"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.syncengine.api.v1 import connections, health

router = APIRouter()

router.include_router(health.router)
router.include_router(connections.router)
