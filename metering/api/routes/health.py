import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

logger = structlog.get_logger(__name__)

router = APIRouter()

SERVICE_NAME = "creators-metering"


@router.get("/health")
async def health_check(request: Request):
    """Liveness probe. Returns 503 once SIGTERM has been received so traffic drains."""
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "service": SERVICE_NAME},
        )
    return {"status": "healthy", "service": SERVICE_NAME}


@router.get("/ready")
async def readiness_check(request: Request):
    """Readiness probe - database, Redis and the change notifier connection."""
    checks = {"database": False, "redis": False, "notifier": False}

    try:
        from metering.db.base import get_session_factory

        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("readiness_database_failed", error=str(e))

    try:
        from metering.db.redis import get_redis

        await get_redis().ping()
        checks["redis"] = True
    except Exception as e:
        logger.error("readiness_redis_failed", error=str(e))

    notifier = getattr(request.app.state, "notifier", None)
    checks["notifier"] = bool(notifier is not None and notifier.is_connected)

    all_healthy = all(checks.values())
    return JSONResponse(
        status_code=200 if all_healthy else 503,
        content={"status": "ready" if all_healthy else "degraded", "checks": checks},
    )
