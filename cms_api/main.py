"""
FastAPI приложение ALCMS
Карты, VIP и баллы
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from shared.config import LOG_LEVEL, LOG_FORMAT, DATA_DIR
from shared.context import ServiceContext, build_default_context
from shared.database import init_db, close_db
from shared.redis_client import close_redis
from shared.validation import ValidationError
from cms_api.health import router as health_router
from cms_api.routers.admin_card_keys import router as admin_card_keys_router
from cms_api.routers.card_keys import router as card_keys_router
from cms_api.routers.checkin import router as checkin_router
from cms_api.routers.points import router as points_router
from cms_api.routers.referral import router as referral_router
from cms_api.routers.vip import router as vip_router
from cms_api.services.errors import ServiceError

# Настройка логирования
logging.basicConfig(
    level=LOG_LEVEL,
    format=LOG_FORMAT,
    handlers=[
        logging.FileHandler(DATA_DIR / "logs" / "cms_api.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifecycle manager для FastAPI
    """
    logger.info("🚀 Starting ALCMS API...")

    if app.state.manage_database:
        await init_db()
        logger.info("✅ Database initialized")

    yield

    logger.info("🛑 Shutting down ALCMS API...")
    if app.state.manage_database:
        await close_db()
    await close_redis()
    logger.info("✅ ALCMS API stopped")


async def service_error_handler(request: Request, exc: Exception):
    """Ошибки сервисов и валидации -> {"success": false, "message": ...}"""
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message}
    )


async def http_error_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=exc.headers
    )


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    )
    return JSONResponse(
        status_code=422,
        content={"success": False, "message": f"Invalid request: {errors}"}
    )


async def global_exception_handler(request: Request, exc: Exception):
    """
    Глобальный обработчик ошибок
    """
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Internal server error"}
    )


def create_app(context: Optional[ServiceContext] = None) -> FastAPI:
    """
    Создать приложение; без context используется глобальный engine,
    который приложение само инициализирует и закрывает
    """
    app = FastAPI(
        title="ALCMS API",
        description="Card keys, VIP memberships and points",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.manage_database = context is None
    app.state.context = context or build_default_context()

    # Подключение роутеров
    app.include_router(health_router)
    app.include_router(card_keys_router)
    app.include_router(admin_card_keys_router)
    app.include_router(vip_router)
    app.include_router(points_router)
    app.include_router(checkin_router)
    app.include_router(referral_router)

    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(ValidationError, service_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    @app.get("/")
    async def root():
        return {
            "status": "ok",
            "service": "ALCMS API",
            "version": "1.0.0"
        }

    return app


app = create_app()


def main():
    import uvicorn
    from shared.config import API_HOST, API_PORT

    uvicorn.run(
        "cms_api.main:app",
        host=API_HOST,
        port=API_PORT,
        reload=False,
        log_level=LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    main()
