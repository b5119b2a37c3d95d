"""
Health check endpoints
"""
import logging
from fastapi import APIRouter, Depends, Response
from sqlalchemy import text

from shared.context import ServiceContext
from shared.redis_client import get_redis
from cms_api.dependencies import get_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


async def _check_db(ctx: ServiceContext):
    async with ctx.session_factory() as session:
        result = await session.execute(text("SELECT 1"))
        result.scalar()


async def _check_redis():
    client = await get_redis()
    await client.ping()


@router.get("")
async def health_check():
    """Базовый health check"""
    return {
        "status": "healthy",
        "service": "ALCMS API"
    }


@router.get("/db")
async def health_check_db(response: Response, ctx: ServiceContext = Depends(get_context)):
    """
    Health check для базы данных
    """
    try:
        await _check_db(ctx)
        return {
            "status": "healthy",
            "service": "database"
        }

    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        response.status_code = 503
        return {
            "status": "unhealthy",
            "service": "database",
            "error": str(e)
        }


@router.get("/redis")
async def health_check_redis(response: Response):
    """
    Health check для Redis
    """
    try:
        await _check_redis()
        return {
            "status": "healthy",
            "service": "redis"
        }

    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        response.status_code = 503
        return {
            "status": "unhealthy",
            "service": "redis",
            "error": str(e)
        }


@router.get("/all")
async def health_check_all(response: Response, ctx: ServiceContext = Depends(get_context)):
    """
    Полный health check всех сервисов
    """
    results = {
        "status": "healthy",
        "services": {}
    }

    try:
        await _check_db(ctx)
        results["services"]["database"] = "healthy"
    except Exception as e:
        results["services"]["database"] = f"unhealthy: {str(e)}"
        results["status"] = "unhealthy"

    try:
        await _check_redis()
        results["services"]["redis"] = "healthy"
    except Exception as e:
        results["services"]["redis"] = f"unhealthy: {str(e)}"
        results["status"] = "unhealthy"

    # Устанавливаем код ответа
    if results["status"] == "unhealthy":
        response.status_code = 503

    return results
