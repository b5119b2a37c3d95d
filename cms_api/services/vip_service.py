"""
Сервис VIP: уровни, статус пользователей, заказы
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import CARD_VALUE_BASE_DAYS
from shared.database import (
    CardKey, OrderStatus, User, UserRole, VipLevel, VipOrder
)
from shared.validation import ValidationError, parse_enum
from cms_api.services.errors import (
    InvalidStatusTransitionError, OrderNotFoundError, UserNotFoundError, VipLevelNotFoundError
)

logger = logging.getLogger(__name__)

VIP_ROLE = "vip"
CENT = Decimal("0.01")

# Разрешённые переходы статусов заказа
ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}

LEVEL_FIELDS = ("name", "display_name", "description", "benefits", "price", "duration_days")


def to_money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENT, rounding=ROUND_HALF_UP)


def vip_snapshot(user: User) -> dict:
    """Публичные поля VIP статуса пользователя"""
    return {
        "id": user.id,
        "username": user.username,
        "is_vip": user.is_vip,
        "vip_level": user.vip_level,
        "vip_expire_at": user.vip_expire_at,
        "vip_activated_at": user.vip_activated_at
    }


class VipService:
    """Сервис VIP (вызывается внутри транзакции вызывающего)"""

    # ========== Уровни ==========

    @staticmethod
    async def get_all_levels(session: AsyncSession, include_inactive: bool = False) -> list[VipLevel]:
        stmt = select(VipLevel).order_by(VipLevel.level.asc())
        if not include_inactive:
            stmt = stmt.where(VipLevel.is_active.is_(True))
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def get_level(session: AsyncSession, level: int, active_only: bool = True) -> Optional[VipLevel]:
        stmt = select(VipLevel).where(VipLevel.level == level)
        if active_only:
            stmt = stmt.where(VipLevel.is_active.is_(True))
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def create_level(session: AsyncSession, level: int, name: str, **data) -> VipLevel:
        if level < 1:
            raise ValidationError("VIP level must be at least 1")
        if await VipService.get_level(session, level, active_only=False):
            raise ValidationError(f"VIP level {level} already exists")

        vip_level = VipLevel(
            level=level,
            name=name,
            **{key: value for key, value in data.items() if key in LEVEL_FIELDS and value is not None}
        )
        session.add(vip_level)
        await session.flush()
        logger.info(f"Created VIP level {level} ({name})")
        return vip_level

    @staticmethod
    async def update_level(session: AsyncSession, level: int, data: dict) -> VipLevel:
        updates = {key: value for key, value in data.items() if key in LEVEL_FIELDS and value is not None}
        if not updates:
            raise ValidationError("No update data provided")

        vip_level = await VipService.get_level(session, level, active_only=False)
        if not vip_level:
            raise VipLevelNotFoundError()

        for key, value in updates.items():
            setattr(vip_level, key, value)
        await session.flush()
        logger.info(f"Updated VIP level {level}: {sorted(updates)}")
        return vip_level

    @staticmethod
    async def set_level_status(session: AsyncSession, level: int, is_active: bool) -> VipLevel:
        vip_level = await VipService.get_level(session, level, active_only=False)
        if not vip_level:
            raise VipLevelNotFoundError()
        vip_level.is_active = is_active
        await session.flush()
        return vip_level

    @staticmethod
    async def delete_level(session: AsyncSession, level: int) -> VipLevel:
        """Мягкое удаление: уровень выключается"""
        return await VipService.set_level_status(session, level, False)

    # ========== VIP статус пользователя ==========

    @staticmethod
    async def _lock_user(session: AsyncSession, user_id: int) -> User:
        result = await session.execute(
            select(User).where(User.id == user_id).with_for_update()
        )
        user = result.scalar_one_or_none()
        if not user:
            raise UserNotFoundError()
        return user

    @staticmethod
    async def assign_role(session: AsyncSession, user_id: int, role: str = VIP_ROLE):
        """Назначить роль (повторное назначение игнорируется)"""
        existing = await session.execute(
            select(UserRole.id).where(UserRole.user_id == user_id, UserRole.role == role)
        )
        if existing.scalar_one_or_none():
            return
        session.add(UserRole(user_id=user_id, role=role))
        await session.flush()

    @staticmethod
    async def remove_role(session: AsyncSession, user_id: int, role: str = VIP_ROLE):
        await session.execute(
            delete(UserRole).where(UserRole.user_id == user_id, UserRole.role == role)
        )

    @staticmethod
    async def get_user_vip_info(session: AsyncSession, user_id: int) -> dict:
        user = await session.get(User, user_id)
        if not user:
            raise UserNotFoundError()

        info = vip_snapshot(user)
        vip_level = await VipService.get_level(session, user.vip_level, active_only=False) if user.vip_level else None
        info.update({
            "vip_name": vip_level.name if vip_level else None,
            "vip_display_name": vip_level.display_name if vip_level else None,
            "vip_benefits": vip_level.benefits if vip_level else None
        })
        return info

    @staticmethod
    async def set_user_vip(session: AsyncSession, user_id: int, vip_level: int, days: int = 30) -> User:
        """
        Установить уровень VIP, срок считается от текущего момента
        days=0 -> бессрочно
        """
        if vip_level < 1:
            raise ValidationError("VIP level must be at least 1")
        if days < 0:
            raise ValidationError("VIP days cannot be negative")

        user = await VipService._lock_user(session, user_id)
        now = datetime.now()

        user.is_vip = True
        user.vip_level = vip_level
        user.vip_expire_at = now + timedelta(days=days) if days > 0 else None
        user.vip_activated_at = now
        await VipService.assign_role(session, user_id)
        await session.flush()

        logger.info(f"Set VIP level {vip_level} for user {user_id}, expire_at={user.vip_expire_at}")
        return user

    @staticmethod
    async def extend_user_vip(session: AsyncSession, user_id: int, days: int) -> User:
        """
        Продлить VIP на days дней (0 -> бессрочно)
        Истёкший срок продлевается от текущего момента, действующий - от даты окончания,
        бессрочный VIP остаётся бессрочным
        """
        if days < 0:
            raise ValidationError("VIP days cannot be negative")

        user = await VipService._lock_user(session, user_id)
        if not user.vip_level:
            raise ValidationError("User has no VIP level to extend")

        now = datetime.now()
        permanent = user.is_vip and user.vip_expire_at is None

        if days == 0:
            user.vip_expire_at = None
        elif permanent:
            pass
        elif user.vip_expire_at is None or user.vip_expire_at < now:
            user.vip_expire_at = now + timedelta(days=days)
        else:
            user.vip_expire_at = user.vip_expire_at + timedelta(days=days)

        user.is_vip = True
        await VipService.assign_role(session, user_id)
        await session.flush()

        logger.info(f"Extended VIP for user {user_id} by {days} days, expire_at={user.vip_expire_at}")
        return user

    @staticmethod
    async def cancel_user_vip(session: AsyncSession, user_id: int) -> User:
        user = await VipService._lock_user(session, user_id)
        user.is_vip = False
        user.vip_level = 0
        user.vip_expire_at = None
        await VipService.remove_role(session, user_id)
        await session.flush()
        logger.info(f"Cancelled VIP for user {user_id}")
        return user

    @staticmethod
    async def update_expired_vip(session: AsyncSession) -> list[dict]:
        """
        Снять VIP у пользователей с истёкшим сроком
        """
        result = await session.execute(
            select(User).where(
                User.is_vip.is_(True),
                User.vip_expire_at.isnot(None),
                User.vip_expire_at < datetime.now()
            ).with_for_update()
        )
        expired_users = result.scalars().all()

        expired = []
        for user in expired_users:
            user.is_vip = False
            user.vip_level = 0
            await VipService.remove_role(session, user.id)
            expired.append({
                "id": user.id,
                "username": user.username,
                "vip_expire_at": user.vip_expire_at
            })

        await session.flush()
        if expired:
            logger.info(f"Expired VIP for {len(expired)} users")
        return expired

    # ========== Заказы ==========

    @staticmethod
    async def create_order(
        session: AsyncSession,
        user_id: int,
        vip_level: int,
        price,
        duration_days: int,
        payment_method: str,
        order_no: str,
        card_key_code: Optional[str] = None
    ) -> VipOrder:
        """
        Создать заказ; expire_at от duration_days (0 -> NULL)
        """
        order = VipOrder(
            user_id=user_id,
            vip_level=vip_level,
            price=to_money(price),
            duration_days=duration_days,
            expire_at=datetime.now() + timedelta(days=duration_days) if duration_days > 0 else None,
            payment_method=payment_method,
            order_no=order_no,
            card_key_code=card_key_code,
            status=OrderStatus.PENDING
        )
        session.add(order)
        await session.flush()
        logger.info(f"Created order {order_no} for user {user_id}: price={order.price}")
        return order

    @staticmethod
    async def update_order_status(session: AsyncSession, order_id: int, status: OrderStatus) -> VipOrder:
        """
        Сменить статус заказа по таблице ORDER_TRANSITIONS

        Raises:
            OrderNotFoundError, InvalidStatusTransitionError
        """
        status = parse_enum(OrderStatus, status)
        result = await session.execute(
            select(VipOrder).where(VipOrder.id == order_id).with_for_update()
        )
        order = result.scalar_one_or_none()
        if not order:
            raise OrderNotFoundError()

        if status not in ORDER_TRANSITIONS[order.status]:
            raise InvalidStatusTransitionError(
                f"Order cannot move from {order.status.value} to {status.value}"
            )

        order.status = status
        await session.flush()
        logger.info(f"Order {order.order_no} -> {status.value}")
        return order

    @staticmethod
    async def get_user_orders(
        session: AsyncSession,
        user_id: int,
        limit: int = 10,
        offset: int = 0,
        payment_method: Optional[str] = None
    ) -> tuple[list[VipOrder], int]:
        conditions = [VipOrder.user_id == user_id]
        if payment_method:
            conditions.append(VipOrder.payment_method == payment_method)

        total = await session.scalar(select(func.count(VipOrder.id)).where(*conditions))
        result = await session.execute(
            select(VipOrder)
            .where(*conditions)
            .order_by(VipOrder.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total or 0

    @staticmethod
    async def get_card_key_orders(
        session: AsyncSession,
        user_id: int,
        limit: int = 10,
        offset: int = 0
    ) -> tuple[list[VipOrder], int]:
        """Заказы, созданные погашением карт"""
        return await VipService.get_user_orders(session, user_id, limit, offset, payment_method="card_key")

    @staticmethod
    async def get_order_by_id(session: AsyncSession, order_id: int, user_id: Optional[int] = None) -> VipOrder:
        order = await session.get(VipOrder, order_id)
        if not order or (user_id is not None and order.user_id != user_id):
            raise OrderNotFoundError()
        return order

    # ========== Цены ==========

    @staticmethod
    async def prorated_level_price(session: AsyncSession, vip_level: int, days: int) -> Decimal:
        """Цена уровня пропорционально дням (цена указана за 30 дней)"""
        level = await VipService.get_level(session, vip_level)
        if not level or not level.price:
            return to_money(0)
        return to_money(Decimal(str(level.price)) * Decimal(days) / Decimal(CARD_VALUE_BASE_DAYS))

    @staticmethod
    async def calculate_card_key_price(session: AsyncSession, card_key: CardKey) -> Decimal:
        """
        Цена заказа для погашенной карты: value_amount карты,
        иначе пропорциональная цена уровня
        """
        if card_key.value_amount and Decimal(str(card_key.value_amount)) > 0:
            return to_money(card_key.value_amount)
        return await VipService.prorated_level_price(session, card_key.vip_level, card_key.vip_days)
