"""
Повторная обработка событий комиссий из outbox
"""
import asyncio
import logging

from shared.config import COMMISSION_MAX_ATTEMPTS, COMMISSION_OUTBOX_BATCH, COMMISSION_OUTBOX_INTERVAL
from shared.context import ServiceContext
from cms_api.services.commission_outbox import drain_pending_events

logger = logging.getLogger(__name__)


class CommissionOutboxDrainer:
    """
    Периодически обрабатывает ожидающие события комиссий (старые первыми)
    """

    def __init__(
        self,
        ctx: ServiceContext,
        check_interval: int = COMMISSION_OUTBOX_INTERVAL,
        batch_size: int = COMMISSION_OUTBOX_BATCH,
        max_attempts: int = COMMISSION_MAX_ATTEMPTS
    ):
        """
        Args:
            check_interval: Интервал проверки в секундах
        """
        self.ctx = ctx
        self.check_interval = check_interval
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.running = False

    async def start(self):
        """Запуск обработки outbox"""
        self.running = True
        logger.info("📤 Commission outbox drainer started")

        while self.running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in commission outbox loop: {e}", exc_info=True)
            await asyncio.sleep(self.check_interval)

    def stop(self):
        """Остановка"""
        self.running = False
        logger.info("📤 Commission outbox drainer stopped")

    async def run_once(self) -> dict:
        return await drain_pending_events(self.ctx, self.batch_size, self.max_attempts)
