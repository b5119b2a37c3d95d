"""
Снятие истёкших VIP статусов
"""
import asyncio
import logging

from shared.config import VIP_SWEEP_INTERVAL
from shared.context import ServiceContext
from shared.database import transaction
from cms_api.services.vip_service import VipService

logger = logging.getLogger(__name__)


class VipExpirySweeper:
    """
    Сервис снятия VIP у пользователей с истёкшим сроком
    """

    def __init__(self, ctx: ServiceContext, interval: int = VIP_SWEEP_INTERVAL):
        """
        Args:
            interval: Интервал запуска в секундах
        """
        self.ctx = ctx
        self.interval = interval
        self.running = False

    async def start(self):
        """Запуск сервиса"""
        self.running = True
        logger.info("⏰ VIP expiry sweeper started")

        while self.running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in VIP expiry loop: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    def stop(self):
        """Остановка сервиса"""
        self.running = False
        logger.info("⏰ VIP expiry sweeper stopped")

    async def run_once(self) -> list[dict]:
        async with transaction(self.ctx.session_factory) as session:
            expired = await VipService.update_expired_vip(session)

        for user in expired:
            logger.info(f"VIP expired for user {user['id']} ({user['username']}), expire_at={user['vip_expire_at']}")
        return expired
