"""
Health check endpoints for the Dashboard Analytics service
"""

import datetime
from typing import Any, Dict

from fastapi import APIRouter, Request

from ...core.config import settings

router = APIRouter()


@router.get("")
async def health_check(request: Request) -> Dict[str, Any]:
    """Liveness plus a summary of the ingestion and cache components."""
    state = request.app.state
    pool = getattr(state, "consumer_pool", None)
    cache = getattr(state, "cache", None)
    registry = getattr(state, "connection_registry", None)
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": settings.VERSION,
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "components": {
            "consumers": "running" if pool is not None and pool.running else "disabled",
            "cache": "enabled" if cache is not None and cache.enabled else "disabled",
            "liveConnections": len(registry) if registry is not None else 0,
        },
    }
