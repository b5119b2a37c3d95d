"""
Сервис реферальной системы: привязка пригласившего и начисление комиссий
"""
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import (
    REFERRAL_COMMISSION_ENABLED,
    REFERRAL_FIRST_RATE,
    REFERRAL_RENEWAL_RATE
)
from shared.database import CardKey, OrderStatus, User, VipOrder
from shared.referral_model import CommissionStatus, ReferralCommission
from shared.validation import ValidationError
from cms_api.services.errors import UserNotFoundError
from cms_api.services.vip_service import to_money

logger = logging.getLogger(__name__)


class ReferralService:
    """
    Сервис комиссий пригласивших
    Ставки задаются при создании (по умолчанию из конфигурации)
    """

    def __init__(
        self,
        enabled: bool = REFERRAL_COMMISSION_ENABLED,
        first_rate: float = REFERRAL_FIRST_RATE,
        renewal_rate: float = REFERRAL_RENEWAL_RATE
    ):
        self.enabled = enabled
        self.first_rate = Decimal(str(first_rate))
        self.renewal_rate = Decimal(str(renewal_rate))

    @staticmethod
    async def bind_inviter(session: AsyncSession, invitee_id: int, inviter_id: int) -> User:
        """
        Привязать пригласившего (один раз, себя пригласить нельзя)
        """
        if invitee_id == inviter_id:
            logger.warning(f"User {invitee_id} tried to invite themselves")
            raise ValidationError("Users cannot invite themselves")

        invitee = await session.get(User, invitee_id)
        inviter = await session.get(User, inviter_id)
        if not invitee or not inviter:
            raise UserNotFoundError()

        if invitee.inviter_id:
            raise ValidationError("Inviter is already bound")

        invitee.inviter_id = inviter_id
        await session.flush()
        logger.info(f"User {invitee_id} bound to inviter {inviter_id}")
        return invitee

    @staticmethod
    async def get_inviter(session: AsyncSession, invitee_id: int) -> Optional[int]:
        result = await session.execute(
            select(User.inviter_id).where(User.id == invitee_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def has_paid_card_key_order(
        session: AsyncSession,
        user_id: int,
        exclude_order_id: Optional[int] = None
    ) -> bool:
        conditions = [
            VipOrder.user_id == user_id,
            VipOrder.payment_method == "card_key",
            VipOrder.status == OrderStatus.PAID
        ]
        if exclude_order_id:
            conditions.append(VipOrder.id != exclude_order_id)

        count = await session.scalar(select(func.count(VipOrder.id)).where(*conditions))
        return (count or 0) > 0

    @staticmethod
    async def get_commission_for_order(session: AsyncSession, order_id: int) -> Optional[ReferralCommission]:
        result = await session.execute(
            select(ReferralCommission).where(ReferralCommission.order_id == order_id)
        )
        return result.scalar_one_or_none()

    async def process_commission(
        self,
        session: AsyncSession,
        user_id: int,
        order: Optional[VipOrder] = None,
        card_key: Optional[CardKey] = None,
        event_type: str = "card_redeem"
    ) -> Optional[ReferralCommission]:
        """
        Начислить комиссию пригласившему за оплату user_id

        Returns:
            запись комиссии или None, если комиссия не положена
        """
        if not self.enabled or not user_id:
            return None

        inviter_id = await self.get_inviter(session, user_id)
        if not inviter_id:
            return None

        if order is not None:
            existing = await self.get_commission_for_order(session, order.id)
            if existing:
                logger.info(f"Commission for order {order.id} already exists")
                return existing

        order_amount = Decimal(0)
        if card_key is not None and card_key.value_amount:
            order_amount = to_money(card_key.value_amount)
        elif order is not None:
            order_amount = to_money(order.price)

        if order_amount <= 0:
            logger.info(f"Order amount is 0, skipping commission for user {user_id} ({event_type})")
            return None

        has_previous = await self.has_paid_card_key_order(
            session, user_id, order.id if order is not None else None
        )
        final_event_type = "renewal" if has_previous else "first_recharge"
        rate = self.renewal_rate if has_previous else self.first_rate

        if rate <= 0:
            return None

        commission_amount = to_money(order_amount * rate)
        if commission_amount <= 0:
            return None

        record = ReferralCommission(
            inviter_id=inviter_id,
            invitee_id=user_id,
            order_id=order.id if order is not None else None,
            card_key_id=card_key.id if card_key is not None else None,
            order_amount=order_amount,
            commission_amount=commission_amount,
            commission_rate=rate,
            event_type=final_event_type,
            status=CommissionStatus.PENDING
        )
        session.add(record)

        result = await session.execute(
            select(User).where(User.id == inviter_id).with_for_update()
        )
        inviter = result.scalar_one()
        inviter.total_commission_earned = to_money(inviter.total_commission_earned) + commission_amount
        inviter.commission_pending_balance = to_money(inviter.commission_pending_balance) + commission_amount
        await session.flush()

        logger.info(
            f"Commission settled: invitee={user_id}, inviter={inviter_id}, "
            f"amount={order_amount}, commission={commission_amount}, "
            f"rate={rate}, event={final_event_type}"
        )
        return record

    @staticmethod
    async def get_commission_summary(session: AsyncSession, inviter_id: int) -> dict:
        result = await session.execute(
            select(
                func.count(ReferralCommission.id),
                func.coalesce(func.sum(ReferralCommission.commission_amount), 0)
            ).where(ReferralCommission.inviter_id == inviter_id)
        )
        count, total = result.one()

        invitees = await session.scalar(
            select(func.count(User.id)).where(User.inviter_id == inviter_id)
        )
        return {
            "inviter_id": inviter_id,
            "invitees_count": invitees or 0,
            "commission_count": count or 0,
            "commission_total": to_money(total)
        }
