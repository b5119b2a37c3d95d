"""
Worker фоновых задач: outbox комиссий и истечение VIP
"""
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

# Добавляем корневую директорию в путь
sys.path.insert(0, str(Path(__file__).parent.parent))

from shared.database import init_db, close_db
from shared.redis_client import close_redis
from shared.config import LOG_LEVEL, LOG_FORMAT, DATA_DIR
from shared.context import ServiceContext, build_default_context
from worker.commission_drain import CommissionOutboxDrainer
from worker.vip_expiry import VipExpirySweeper

# Настройка логирования
logging.basicConfig(
    level=LOG_LEVEL,
    format=LOG_FORMAT,
    handlers=[
        logging.FileHandler(DATA_DIR / "logs" / "worker.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)


class Worker:
    """Worker периодических задач"""

    def __init__(self, ctx: Optional[ServiceContext] = None):
        self.ctx = ctx or build_default_context()
        # Переданный контекст владеет своим engine, глобальный не трогаем
        self.manage_database = ctx is None
        self.running = False
        self.commission_drainer = CommissionOutboxDrainer(self.ctx)
        self.vip_sweeper = VipExpirySweeper(self.ctx)
        self.tasks: list[asyncio.Task] = []

    async def start(self):
        """Запуск worker"""
        self.running = True
        logger.info("🚀 Worker started")

        if self.manage_database:
            await init_db()
            logger.info("✅ Database initialized")

        self.tasks = [
            asyncio.create_task(self.commission_drainer.start()),
            asyncio.create_task(self.vip_sweeper.start()),
        ]
        logger.info("✅ Commission drainer and VIP sweeper started")

        try:
            while self.running:
                await asyncio.sleep(1)
        finally:
            await self.cleanup()

    async def cleanup(self):
        """Очистка ресурсов"""
        logger.info("🧹 Cleaning up...")

        self.commission_drainer.stop()
        self.vip_sweeper.stop()
        for task in self.tasks:
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = []

        if self.manage_database:
            await close_db()
        await close_redis()
        logger.info("✅ Worker stopped")

    def stop(self):
        """Остановка worker"""
        self.running = False


async def run():
    worker = Worker()

    try:
        await worker.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Shutting down worker...")
        worker.stop()


def main():
    """Точка входа alcms-worker"""
    asyncio.run(run())


if __name__ == "__main__":
    main()
