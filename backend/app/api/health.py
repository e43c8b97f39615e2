"""
Health check endpoint.
Verifies database and Redis (Celery broker) connectivity and reports
how many fallback pollers this process is running.
"""
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
import redis

from app.database import get_db
from app.config import settings

router = APIRouter()


@router.get("")
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.
    503 when the database or Redis is unreachable.
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "redis": "unknown",
    }

    try:
        await db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        health_status["database"] = f"error: {str(e)}"
        health_status["status"] = "unhealthy"

    try:
        r = redis.from_url(settings.redis_url, socket_connect_timeout=2)
        r.ping()
        health_status["redis"] = "connected"
    except redis.RedisError as e:
        health_status["redis"] = f"error: {str(e)}"
        health_status["status"] = "unhealthy"

    registry = getattr(request.app.state, "polling_registry", None)
    health_status["active_polls"] = len(registry.active_task_ids()) if registry else 0

    if health_status["status"] == "unhealthy":
        raise HTTPException(status_code=503, detail=health_status)

    return health_status
