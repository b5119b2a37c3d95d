"""
Явный контекст сервисов: фабрика сессий и обработчик комиссий
"""
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


class CommissionProcessor(Protocol):
    """Внешний сервис комиссий (реферальная система)"""

    async def process_commission(
        self,
        session: AsyncSession,
        user_id: int,
        order: Any,
        card_key: Any,
        event_type: str
    ) -> Optional[Any]:
        ...


@dataclass
class ServiceContext:
    session_factory: async_sessionmaker
    commission_processor: CommissionProcessor


def build_default_context() -> ServiceContext:
    """Контекст для API и worker на основе глобального engine"""
    from shared.database import AsyncSessionLocal
    from cms_api.services.referral_service import ReferralService

    return ServiceContext(
        session_factory=AsyncSessionLocal,
        commission_processor=ReferralService()
    )
