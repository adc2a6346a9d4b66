from datetime import UTC, datetime

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from shopbuilder.api.deps import get_job_store
from shopbuilder.db.redis import get_redis_or_none
from shopbuilder.jobs.store import JobStore

logger = structlog.get_logger(__name__)

# Mounted at the application root
root_router = APIRouter()

router = APIRouter()


@root_router.get("/health")
async def health_check(request: Request):
    """Liveness probe. Returns 503 while the app is shutting down."""
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(status_code=503, content={"status": "shutting_down"})
    return {"status": "OK", "timestamp": datetime.now(UTC).isoformat()}


@router.get("/ready")
async def readiness_check(store: JobStore = Depends(get_job_store)):
    """Readiness: Redis reachability and whether the job store is running degraded.

    A degraded store still serves requests from memory, so this only returns
    503 when Redis is configured and unreachable.
    """
    checks = {"redis": False, "job_store_degraded": store.degraded}

    redis = get_redis_or_none()
    if redis is not None:
        try:
            await redis.ping()
            checks["redis"] = True
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))

    healthy = redis is None or checks["redis"]
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "ready" if healthy and not store.degraded else "degraded", "checks": checks},
    )
