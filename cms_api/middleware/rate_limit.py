"""
Ограничение частоты погашения карт (счётчик в Redis на IP)
"""
import logging

from fastapi import HTTPException, Request, status
from redis.exceptions import RedisError

from shared.config import RATE_LIMIT_REDEEM_PER_HOUR, TRUSTED_PROXIES
from shared.redis_client import cache

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 3600


def client_ip(request: Request) -> str:
    """
    Адрес клиента; X-Forwarded-For учитывается только от доверенного прокси
    """
    peer = request.client.host if request.client else "unknown"
    if peer in TRUSTED_PROXIES:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return peer


async def redeem_rate_limit(request: Request) -> bool:
    """
    Не более RATE_LIMIT_REDEEM_PER_HOUR попыток погашения в час с одного IP
    """
    ip = client_ip(request)

    try:
        attempts = await cache.incr(f"rate:redeem:{ip}", WINDOW_SECONDS)
    except RedisError as e:
        # Без Redis лимит не применяется
        logger.error(f"Rate limit check failed for {ip}: {e}")
        return True

    if attempts > RATE_LIMIT_REDEEM_PER_HOUR:
        logger.warning(f"Redeem rate limit exceeded for {ip}: {attempts} attempts")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many redeem attempts, please try again later"
        )
    return True
