from datetime import datetime
from typing import Dict

from fastapi import APIRouter, Depends, status
from redis.asyncio import Redis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from xnrt_ledger.core.dependencies import get_redis_client
from xnrt_ledger.infra.config.settings import settings
from xnrt_ledger.infra.database import get_async_session

router = APIRouter()


async def check_redis_health(redis_client: Redis) -> Dict[str, str]:
    """Check Redis connection health."""
    try:
        await redis_client.ping()
        return {"status": "healthy", "message": "Connected"}
    except Exception as e:
        return {"status": "unhealthy", "message": f"Connection failed: {str(e)}"}


async def check_database_health(session: AsyncSession) -> Dict[str, str]:
    """Check database connection health."""
    try:
        await session.execute(text("SELECT 1"))
        return {"status": "healthy", "message": "Connected"}
    except Exception as e:
        return {"status": "unhealthy", "message": f"Connection failed: {str(e)}"}


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(
    redis_client: Redis = Depends(get_redis_client),
    session: AsyncSession = Depends(get_async_session)
):
    """
    Health check endpoint.
    Returns the status of Redis, the database and whether the deposit scanner is enabled.
    """
    services = {
        "redis": (await check_redis_health(redis_client))["status"],
        "database": (await check_database_health(session))["status"],
        "deposit_scanner": "enabled" if settings.AUTO_DEPOSIT else "disabled"
    }
    overall_status = "healthy"
    if any(value == "unhealthy" for value in services.values()):
        overall_status = "degraded"

    return {
        "status": overall_status,
        "services": services,
        "version": settings.APP_VERSION,
        "timestamp": datetime.utcnow().isoformat() + "Z"
    }
