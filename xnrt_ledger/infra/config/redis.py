import redis.asyncio as redis
from redis.exceptions import RedisError
from functools import lru_cache

from xnrt_ledger.infra.config.settings import settings
from xnrt_ledger.core.logger.logger import get_logger

logger = get_logger(__name__)


@lru_cache()
def get_redis_pool() -> redis.ConnectionPool:
    """Shared pool for wallet challenges and the scanner lock"""
    return redis.ConnectionPool.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS
    )


async def get_redis() -> redis.Redis:
    """Client on the shared pool, pinged before use"""
    client = redis.Redis(connection_pool=get_redis_pool())
    try:
        await client.ping()
    except RedisError as e:
        logger.error("Redis unavailable", extra={"error": str(e)})
        raise
    return client


async def close_redis_pool() -> None:
    if get_redis_pool.cache_info().currsize:
        await get_redis_pool().disconnect()
        get_redis_pool.cache_clear()
        logger.info("Redis pool closed")
