"""Health check endpoint.

Verifies connectivity to the database and Redis, returns structured status.
Used by Docker healthchecks, load balancers, and monitoring systems.
"""

from __future__ import annotations

from fastapi import APIRouter
from sqlalchemy import text

from service_escrow.logging_config import get_logger
from service_escrow.schemas.payments import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check() -> HealthResponse:
    """Check connectivity to the database and Redis."""
    db_status = "unknown"
    redis_status = "unknown"

    # Check database
    try:
        from service_escrow.infrastructure.database.engine import _get_engine

        engine = _get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception as exc:
        db_status = f"unhealthy: {exc}"
        logger.error("health.db_check_failed", error=str(exc))

    # Check Redis (optional: webhook de-duplication degrades without it)
    from service_escrow.infrastructure.redis_client import get_redis_or_none

    redis = get_redis_or_none()
    if redis is None:
        redis_status = "disabled"
    else:
        try:
            await redis.ping()
            redis_status = "healthy"
        except Exception as exc:
            redis_status = f"unhealthy: {exc}"
            logger.error("health.redis_check_failed", error=str(exc))

    redis_ok = not redis_status.startswith("unhealthy")
    overall = "ok" if db_status == "healthy" and redis_ok else "degraded"

    return HealthResponse(
        status=overall,
        version="0.1.0",
        database=db_status,
        redis=redis_status,
    )
