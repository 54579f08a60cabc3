"""
Health check endpoints.
"""
from fastapi import APIRouter, Depends
import redis.asyncio as redis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from dungeon_runs.api.deps import get_db, get_redis_client, get_run_queue
from dungeon_runs.core.config import settings
from dungeon_runs.core.db import utcnow
from dungeon_runs.core.queue import RunQueue

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check."""
    return {"status": "healthy", "environment": settings.ENV}


@router.get("/health/detailed")
async def detailed_health(
    db: AsyncSession = Depends(get_db),
    client: redis.Redis = Depends(get_redis_client),
    queue: RunQueue = Depends(get_run_queue),
):
    """Detailed health check with dependencies."""
    checks = {
        "database": False,
        "redis": False,
        "api": True,
    }
    errors = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        errors["database_error"] = str(e)

    queue_depth = None
    try:
        await client.ping()
        checks["redis"] = True
        queue_depth = await queue.depth()
    except Exception as e:
        errors["redis_error"] = str(e)

    return {
        "status": "healthy" if all(checks.values()) else "degraded",
        "checks": {**checks, **errors},
        "queueDepth": queue_depth,
        "timestamp": utcnow().isoformat(),
    }
