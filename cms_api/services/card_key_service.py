"""
Хранилище карт: создание, поиск, списки, статистика, удаление
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import case, delete, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from shared.config import CARD_CODE_MAX_ATTEMPTS, POINTS_TO_MONEY_RATE
from shared.database import CardKey, CardKeyStatus, CardKeyType, User
from shared.validation import parse_enum, to_local_naive, validate_batch_count, validate_card_payload
from cms_api.services.code_generator import generate_batch_id, generate_code
from cms_api.services.errors import CardKeyNotFoundError, InvalidStatusTransitionError
from cms_api.services.pagination import build_pagination
from cms_api.services.vip_service import VipService, to_money

logger = logging.getLogger(__name__)

UsedBy = aliased(User)
CreatedBy = aliased(User)


def _with_usernames(row) -> dict:
    card, used_by_username, created_by_username = row
    return {
        "card": card,
        "used_by_username": used_by_username,
        "created_by_username": created_by_username
    }


class CardKeyService:
    """Сервис карт (вызывается внутри транзакции вызывающего)"""

    @staticmethod
    async def calculate_card_value(
        session: AsyncSession,
        card_type: str,
        vip_level: int = 0,
        vip_days: int = 0,
        points: int = 0
    ) -> Decimal:
        """
        Денежная стоимость карты:
        VIP - цена уровня * дни / 30, баллы - points * POINTS_TO_MONEY_RATE
        """
        if card_type == CardKeyType.VIP.value and vip_level > 0:
            return await VipService.prorated_level_price(session, vip_level, vip_days)
        if card_type == CardKeyType.POINTS.value and points > 0:
            return to_money(Decimal(points) * Decimal(str(POINTS_TO_MONEY_RATE)))
        return to_money(0)

    @staticmethod
    async def _unique_codes(session: AsyncSession, count: int) -> list[str]:
        """
        Сгенерировать count кодов, которых ещё нет в базе;
        коллизии перегенерируются, не более CARD_CODE_MAX_ATTEMPTS раундов
        """
        codes: set[str] = set()
        for _ in range(CARD_CODE_MAX_ATTEMPTS):
            candidates = {generate_code() for _ in range(count - len(codes))} - codes
            if candidates:
                result = await session.execute(
                    select(CardKey.code).where(CardKey.code.in_(candidates))
                )
                taken = set(result.scalars().all())
                if taken:
                    logger.warning(f"Card code collision, regenerating {len(taken)} codes")
                codes |= candidates - taken
            if len(codes) == count:
                return list(codes)
        raise RuntimeError(f"Could not generate {count} unique card codes")

    @staticmethod
    async def create_card_key(
        session: AsyncSession,
        card_type: str = "vip",
        vip_level: int = 1,
        vip_days: int = 30,
        points: int = 0,
        expire_at: Optional[datetime] = None,
        value_amount=None,
        created_by: Optional[int] = None,
        batch_id: Optional[str] = None,
        code: Optional[str] = None
    ) -> CardKey:
        """
        Создать одну карту; value_amount считается, если не указан
        """
        validate_card_payload(card_type, vip_level, vip_days, points)

        if card_type == CardKeyType.POINTS.value:
            vip_level, vip_days = 0, 0
        else:
            points = 0

        if value_amount is None:
            value_amount = await CardKeyService.calculate_card_value(
                session, card_type, vip_level, vip_days, points
            )

        if code is None:
            code = (await CardKeyService._unique_codes(session, 1))[0]

        card = CardKey(
            code=code,
            type=CardKeyType(card_type),
            vip_level=vip_level,
            vip_days=vip_days,
            points=points,
            value_amount=to_money(value_amount),
            status=CardKeyStatus.UNUSED,
            expire_at=to_local_naive(expire_at),
            batch_id=batch_id,
            created_by=created_by
        )
        session.add(card)
        await session.flush()
        return card

    @staticmethod
    async def create_batch_card_keys(
        session: AsyncSession,
        count: int,
        card_type: str = "vip",
        vip_level: int = 1,
        vip_days: int = 30,
        points: int = 0,
        expire_at: Optional[datetime] = None,
        value_amount=None,
        created_by: Optional[int] = None
    ) -> dict:
        """
        Создать партию карт с общим batch_id
        Все вставки в транзакции вызывающего: ошибка откатывает всю партию
        """
        validate_batch_count(count)
        validate_card_payload(card_type, vip_level, vip_days, points)

        batch_id = generate_batch_id()
        if value_amount is None:
            value_amount = await CardKeyService.calculate_card_value(
                session, card_type, vip_level, vip_days, points
            )

        codes = await CardKeyService._unique_codes(session, count)
        cards = []
        for code in codes:
            cards.append(await CardKeyService.create_card_key(
                session,
                card_type=card_type,
                vip_level=vip_level,
                vip_days=vip_days,
                points=points,
                expire_at=expire_at,
                value_amount=value_amount,
                created_by=created_by,
                batch_id=batch_id,
                code=code
            ))

        logger.info(f"Created batch {batch_id}: {len(cards)} {card_type} cards, created_by={created_by}")
        return {"batch_id": batch_id, "count": len(cards), "card_keys": cards}

    @staticmethod
    async def get_by_code(session: AsyncSession, code: str) -> Optional[dict]:
        """
        Карта по коду вместе с именами погасившего и создателя
        """
        result = await session.execute(
            select(CardKey, UsedBy.username, CreatedBy.username)
            .outerjoin(UsedBy, CardKey.used_by == UsedBy.id)
            .outerjoin(CreatedBy, CardKey.created_by == CreatedBy.id)
            .where(CardKey.code == code)
        )
        row = result.first()
        return _with_usernames(row) if row else None

    @staticmethod
    async def get_card_keys(
        session: AsyncSession,
        status: Optional[str] = None,
        card_type: Optional[str] = None,
        batch_id: Optional[str] = None,
        created_by: Optional[int] = None,
        limit: int = 20,
        offset: int = 0
    ) -> dict:
        conditions = []
        if status:
            conditions.append(CardKey.status == parse_enum(CardKeyStatus, status))
        if card_type:
            conditions.append(CardKey.type == parse_enum(CardKeyType, card_type, "type"))
        if batch_id:
            conditions.append(CardKey.batch_id == batch_id)
        if created_by:
            conditions.append(CardKey.created_by == created_by)

        total = await session.scalar(select(func.count(CardKey.id)).where(*conditions))
        result = await session.execute(
            select(CardKey, UsedBy.username, CreatedBy.username)
            .outerjoin(UsedBy, CardKey.used_by == UsedBy.id)
            .outerjoin(CreatedBy, CardKey.created_by == CreatedBy.id)
            .where(*conditions)
            .order_by(CardKey.created_at.desc(), CardKey.id.desc())
            .limit(limit)
            .offset(offset)
        )

        return {
            "data": [_with_usernames(row) for row in result.all()],
            "pagination": build_pagination(total or 0, limit, offset)
        }

    @staticmethod
    async def get_statistics(session: AsyncSession, batch_id: Optional[str] = None) -> list[dict]:
        stmt = (
            select(CardKey.type, CardKey.status, func.count(CardKey.id))
            .group_by(CardKey.type, CardKey.status)
            .order_by(CardKey.type, CardKey.status)
        )
        if batch_id:
            stmt = stmt.where(CardKey.batch_id == batch_id)

        result = await session.execute(stmt)
        return [
            {"type": card_type.value, "status": status.value, "count": count}
            for card_type, status, count in result.all()
        ]

    @staticmethod
    async def get_batches(
        session: AsyncSession,
        created_by: Optional[int] = None,
        limit: int = 20,
        offset: int = 0
    ) -> dict:
        conditions = [CardKey.batch_id.isnot(None)]
        if created_by:
            conditions.append(CardKey.created_by == created_by)

        total = await session.scalar(
            select(func.count(distinct(CardKey.batch_id))).where(*conditions)
        )

        first_created = func.min(CardKey.created_at)
        result = await session.execute(
            select(
                CardKey.batch_id,
                CardKey.type,
                CardKey.vip_level,
                CardKey.vip_days,
                CardKey.points,
                func.count(CardKey.id).label("total_count"),
                func.count(case((CardKey.status == CardKeyStatus.UNUSED, 1))).label("unused_count"),
                func.count(case((CardKey.status == CardKeyStatus.USED, 1))).label("used_count"),
                first_created.label("created_at"),
                CreatedBy.username.label("created_by_username")
            )
            .outerjoin(CreatedBy, CardKey.created_by == CreatedBy.id)
            .where(*conditions)
            .group_by(
                CardKey.batch_id, CardKey.type, CardKey.vip_level,
                CardKey.vip_days, CardKey.points, CreatedBy.username
            )
            .order_by(first_created.desc())
            .limit(limit)
            .offset(offset)
        )

        batches = []
        for row in result.mappings().all():
            batch = dict(row)
            batch["type"] = batch["type"].value
            batches.append(batch)

        return {"data": batches, "pagination": build_pagination(total or 0, limit, offset)}

    @staticmethod
    async def get_batch_details(
        session: AsyncSession,
        batch_id: str,
        limit: int = 100,
        offset: int = 0
    ) -> Optional[dict]:
        """
        Карты партии и статистика по ней; None, если партии нет
        """
        cards = await CardKeyService.get_card_keys(session, batch_id=batch_id, limit=limit, offset=offset)
        if cards["pagination"]["total"] == 0:
            return None

        return {
            "batch_id": batch_id,
            "data": cards["data"],
            "statistics": await CardKeyService.get_statistics(session, batch_id),
            "pagination": cards["pagination"]
        }

    @staticmethod
    async def update_status(session: AsyncSession, card_id: int, status: str) -> CardKey:
        """
        Административная смена статуса: только unused -> disabled
        """
        status = parse_enum(CardKeyStatus, status)
        result = await session.execute(
            select(CardKey).where(CardKey.id == card_id).with_for_update()
        )
        card = result.scalar_one_or_none()
        if not card:
            raise CardKeyNotFoundError()

        if card.status != CardKeyStatus.UNUSED or status != CardKeyStatus.DISABLED:
            raise InvalidStatusTransitionError(
                f"Card key cannot move from {card.status.value} to {status.value}"
            )

        card.status = status
        await session.flush()
        logger.info(f"Card key {card.code} disabled")
        return card

    @staticmethod
    async def delete_card_key(session: AsyncSession, card_id: int) -> Optional[CardKey]:
        """
        Удалить неиспользованную карту; для остальных ничего не удаляется
        """
        result = await session.execute(
            select(CardKey).where(CardKey.id == card_id, CardKey.status == CardKeyStatus.UNUSED)
        )
        card = result.scalar_one_or_none()
        if card:
            await session.delete(card)
            await session.flush()
            logger.info(f"Deleted card key {card.code}")
        return card

    @staticmethod
    async def delete_batch(session: AsyncSession, batch_id: str) -> int:
        """
        Удалить неиспользованные карты партии

        Returns:
            количество удалённых карт
        """
        result = await session.execute(
            delete(CardKey)
            .where(CardKey.batch_id == batch_id, CardKey.status == CardKeyStatus.UNUSED)
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount or 0
        logger.info(f"Deleted {deleted} unused cards from batch {batch_id}")
        return deleted
