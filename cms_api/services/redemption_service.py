"""
Погашение карт
Все изменения (карта, награда, заказ, событие комиссии) в одной транзакции;
комиссия обрабатывается после commit и не влияет на результат погашения
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.context import ServiceContext
from shared.database import (
    CardKey, CardKeyStatus, OrderStatus, PointsReward, User, VipOrder, VipReward, transaction
)
from shared.referral_model import ReferralCommission
from shared.validation import normalize_card_code
from cms_api.services.code_generator import generate_order_no
from cms_api.services.commission_outbox import dispatch_commission_event, enqueue_commission_event
from cms_api.services.errors import (
    CardKeyAlreadyRedeemedError, CardKeyDisabledError, CardKeyExpiredError, CardKeyNotFoundError, UserNotFoundError
)
from cms_api.services.points_service import PointsService
from cms_api.services.vip_service import VipService, to_money, vip_snapshot

logger = logging.getLogger(__name__)

PAYMENT_METHOD = "card_key"


@dataclass
class RedemptionResult:
    card_key: CardKey
    order: VipOrder
    vip_result: Optional[dict] = None
    points_result: Optional[dict] = None
    commission: Optional[ReferralCommission] = None


class RedemptionService:
    """Сервис погашения карт"""

    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx

    async def redeem_card_key(self, code: str, user_id: int) -> RedemptionResult:
        """
        Погасить карту code пользователем user_id

        Raises:
            CardKeyNotFoundError, CardKeyAlreadyRedeemedError, CardKeyDisabledError,
            CardKeyExpiredError, UserNotFoundError
        """
        code = normalize_card_code(code)

        try:
            async with transaction(self.ctx.session_factory) as session:
                card = await self._get_redeemable(session, code)

                if not await session.get(User, user_id):
                    raise UserNotFoundError()

                await self._mark_used(session, card, user_id)

                reward = card.reward
                if isinstance(reward, VipReward):
                    vip_result, order = await self._grant_vip(session, card, reward, user_id)
                    points_result = None
                elif isinstance(reward, PointsReward):
                    points_result, order = await self._grant_points(session, card, reward, user_id)
                    vip_result = None
                else:
                    raise TypeError(f"Unsupported card reward: {reward!r}")

                event_id = None
                if order is not None and to_money(card.value_amount) > 0:
                    event = await enqueue_commission_event(session, user_id, order, card, "card_redeem")
                    event_id = event.id

        except (CardKeyNotFoundError, CardKeyAlreadyRedeemedError, CardKeyDisabledError, CardKeyExpiredError, UserNotFoundError) as e:
            logger.warning(f"Card key {code} rejected for user {user_id}: {e.message}")
            raise

        logger.info(
            f"Card key {code} redeemed by user {user_id}: "
            f"type={card.type.value}, order={order.order_no}"
        )

        result = RedemptionResult(
            card_key=card,
            order=order,
            vip_result=vip_result,
            points_result=points_result
        )

        if event_id is not None:
            try:
                result.commission = await dispatch_commission_event(self.ctx, event_id)
            except Exception as e:
                # Погашение уже зафиксировано, событие останется в outbox
                logger.error(f"Commission processing failed for card key {code}: {e}")
                result.commission = None

        return result

    @staticmethod
    async def _get_redeemable(session: AsyncSession, code: str) -> CardKey:
        result = await session.execute(
            select(CardKey).where(CardKey.code == code).with_for_update()
        )
        card = result.scalar_one_or_none()

        if not card:
            raise CardKeyNotFoundError()
        if card.status == CardKeyStatus.DISABLED:
            raise CardKeyDisabledError()
        if card.status != CardKeyStatus.UNUSED:
            raise CardKeyAlreadyRedeemedError()
        if card.expire_at and card.expire_at < datetime.now():
            raise CardKeyExpiredError()

        return card

    @staticmethod
    async def _mark_used(session: AsyncSession, card: CardKey, user_id: int):
        # Условие status='unused': параллельное погашение обновит 0 строк
        result = await session.execute(
            update(CardKey)
            .where(CardKey.code == card.code, CardKey.status == CardKeyStatus.UNUSED)
            .values(status=CardKeyStatus.USED, used_by=user_id, used_at=datetime.now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise CardKeyAlreadyRedeemedError()
        await session.refresh(card)

    @staticmethod
    async def _grant_vip(
        session: AsyncSession,
        card: CardKey,
        reward: VipReward,
        user_id: int
    ) -> tuple[dict, VipOrder]:
        user = await session.get(User, user_id)

        if user.is_vip and user.vip_level >= reward.level:
            # Уровень не ниже уровня карты - продлеваем
            user = await VipService.extend_user_vip(session, user_id, reward.days)
        else:
            user = await VipService.set_user_vip(session, user_id, reward.level, reward.days)

        price = await VipService.calculate_card_key_price(session, card)
        order = await VipService.create_order(
            session,
            user_id=user_id,
            vip_level=reward.level,
            price=price,
            duration_days=reward.days,
            payment_method=PAYMENT_METHOD,
            order_no=generate_order_no("CARD", user_id),
            card_key_code=card.code
        )
        order = await VipService.update_order_status(session, order.id, OrderStatus.PAID)
        return vip_snapshot(user), order

    @staticmethod
    async def _grant_points(
        session: AsyncSession,
        card: CardKey,
        reward: PointsReward,
        user_id: int
    ) -> tuple[dict, VipOrder]:
        points_result = await PointsService.add_points(
            session,
            user_id,
            reward.amount,
            source="card_key",
            description=f"Redeemed card key for {reward.amount} points",
            related_id=card.id,
            related_type="card_key"
        )

        order = await VipService.create_order(
            session,
            user_id=user_id,
            vip_level=0,
            price=card.value_amount or Decimal(0),
            duration_days=0,
            payment_method=PAYMENT_METHOD,
            order_no=generate_order_no("CARD_POINTS", user_id),
            card_key_code=card.code
        )
        order = await VipService.update_order_status(session, order.id, OrderStatus.PAID)
        return points_result, order
