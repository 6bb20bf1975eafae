"""
Health check endpoints.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine

router = APIRouter()


def _dispatch_backend_name(request: Request) -> str:
    backend = getattr(request.app.state, "dispatcher", None)
    return getattr(backend, "name", "unconfigured")


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint.
    Reports database, Redis and the selected normalization backend.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "dispatch_backend": _dispatch_backend_name(request),
        "object_store": settings.OBJECT_STORE_BACKEND,
        "callback_signature_mode": settings.CALLBACK_SIGNATURE_MODE,
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Redis backs rate limits, counters and the relay broker; the API runs without it.
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"

    return health_status


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Kubernetes-style readiness probe."""
    missing = []
    if getattr(request.app.state, "dispatcher", None) is None:
        missing.append("dispatcher")
    if getattr(request.app.state, "object_store", None) is None:
        missing.append("object_store")
    if settings.OBJECT_STORE_BACKEND == "s3" and not settings.S3_BUCKET:
        missing.append("S3_BUCKET")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
