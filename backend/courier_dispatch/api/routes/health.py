"""
Health check endpoints.
"""
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from courier_dispatch.core.config import settings
from courier_dispatch.core.database import get_db
from courier_dispatch.core.metrics import update_service_health
from courier_dispatch.core.redis import redis_client

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict:
    """Basic health check."""
    return {"status": "healthy"}


@router.get("/health/detailed")
async def detailed_health_check(
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Detailed health check including dependencies."""
    checks = {
        "api": "healthy",
        "database": "unknown",
    }

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except SQLAlchemyError as e:
        checks["database"] = f"unhealthy: {str(e)}"
    update_service_health("database", checks["database"] == "healthy")

    # Redis only matters when it backs the geo index
    if settings.GEO_INDEX_BACKEND == "redis":
        redis_healthy = await redis_client.health_check()
        checks["redis"] = "healthy" if redis_healthy else "unhealthy"
        update_service_health("redis", redis_healthy)

    overall = "healthy" if all(v == "healthy" for v in checks.values()) else "degraded"

    return {
        "status": overall,
        "checks": checks,
    }
