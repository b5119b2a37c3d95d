"""
Redis клиент для rate limiting
"""
import logging
from typing import Optional
import redis.asyncio as redis

from shared.config import REDIS_URL

logger = logging.getLogger(__name__)

# Глобальный Redis клиент
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """
    Получить Redis клиент
    """
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.from_url(
            REDIS_URL,
            encoding="utf-8",
            decode_responses=True
        )
        logger.info("Redis client initialized")

    return _redis_client


async def close_redis():
    """
    Закрыть Redis соединение
    """
    global _redis_client

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis client closed")


class RedisCache:
    """
    Счётчики на основе Redis
    """

    async def incr(self, key: str, ttl: int) -> int:
        """
        Увеличить счётчик; TTL ставится при первом увеличении
        """
        client = await get_redis()
        count = await client.incr(key)
        if count == 1:
            await client.expire(key, ttl)
        return int(count)


# Кэш
cache = RedisCache()
