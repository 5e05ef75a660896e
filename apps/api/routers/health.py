"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine
from services.video_queue import get_video_queue

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Overall service health: database, Redis, RapidAPI key and queue counts.
    Dependency failures degrade the status instead of failing the request.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "rapidapi_key": "configured" if settings.RAPIDAPI_KEY else "missing",
        "video_queue": {"running": False},
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    try:
        r = redis.from_url(settings.REDIS_URL)
        try:
            await r.ping()
        finally:
            await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"

    queue = get_video_queue()
    try:
        health_status["video_queue"] = {"running": queue.running, **(await queue.get_stats())}
    except Exception as e:
        health_status["video_queue"] = {"running": queue.running, "error": str(e)}
        health_status["status"] = "degraded"
    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness check."""
    missing = []
    if not settings.RAPIDAPI_KEY:
        missing.append("RAPIDAPI_KEY")
    if not get_video_queue().running:
        missing.append("video_queue")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness check."""
    return {"alive": True}
