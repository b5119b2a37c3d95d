"""
Сервис баллов пользователей
Каждое изменение баланса пишет одну запись в points_records
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import POINTS_BATCH_GRANT_MAX
from shared.database import PointsRecord, User
from shared.validation import ValidationError, validate_positive_amount
from cms_api.services.errors import InsufficientBalanceError, UserNotFoundError

logger = logging.getLogger(__name__)

# Рейтинг по текущему балансу или по сумме всех начислений
LEADERBOARD_FIELDS = {
    "current": User.points,
    "total": User.total_points,
}


def _leaderboard_field(board: str):
    try:
        return LEADERBOARD_FIELDS[board]
    except KeyError:
        raise ValidationError(f"Unknown leaderboard type: {board}")


class PointsService:
    """Сервис управления баллами (вызывается внутри транзакции вызывающего)"""

    @staticmethod
    async def _lock_user(session: AsyncSession, user_id: int) -> User:
        # SELECT FOR UPDATE: параллельные изменения баланса сериализуются
        result = await session.execute(
            select(User).where(User.id == user_id).with_for_update()
        )
        user = result.scalar_one_or_none()
        if not user:
            raise UserNotFoundError()
        return user

    @staticmethod
    async def _lock_users(session: AsyncSession, user_ids: list[int]) -> dict[int, User]:
        # Всегда по возрастанию id, встречные переводы ждут друг друга без deadlock
        result = await session.execute(
            select(User)
            .where(User.id.in_(user_ids))
            .order_by(User.id)
            .with_for_update()
        )
        return {user.id: user for user in result.scalars().all()}

    @staticmethod
    async def _apply(
        session: AsyncSession,
        user_id: int,
        amount: int,
        record_type: str,
        source: str,
        description: str = "",
        related_id: Optional[int] = None,
        related_type: Optional[str] = None,
        count_towards_total: bool = True
    ) -> dict:
        user = await PointsService._lock_user(session, user_id)

        balance_before = user.points or 0
        balance_after = balance_before + amount

        if balance_after < 0:
            logger.warning(
                f"Insufficient points for user {user_id}: "
                f"balance={balance_before}, change={amount}"
            )
            raise InsufficientBalanceError()

        user.points = balance_after
        if amount > 0 and count_towards_total:
            user.total_points = (user.total_points or 0) + amount

        record = PointsRecord(
            user_id=user_id,
            type=record_type,
            amount=amount,
            source=source,
            description=description,
            related_id=related_id,
            related_type=related_type,
            balance_before=balance_before,
            balance_after=balance_after
        )
        session.add(record)
        await session.flush()

        logger.info(
            f"Points {record_type} for user {user_id}: {amount:+d} "
            f"({balance_before} -> {balance_after}), source={source}"
        )

        return {
            "user": {"points": user.points, "total_points": user.total_points},
            "record": record
        }

    @staticmethod
    async def get_user_points(session: AsyncSession, user_id: int) -> dict:
        """
        Получить баланс баллов
        """
        user = await session.get(User, user_id)
        if not user:
            raise UserNotFoundError()
        return {
            "id": user.id,
            "username": user.username,
            "points": user.points,
            "total_points": user.total_points
        }

    @staticmethod
    async def add_points(
        session: AsyncSession,
        user_id: int,
        amount: int,
        source: str,
        description: str = "",
        related_id: Optional[int] = None,
        related_type: Optional[str] = None
    ) -> dict:
        """
        Начислить баллы
        """
        validate_positive_amount(amount, "points")
        return await PointsService._apply(
            session, user_id, amount, "earn", source,
            description, related_id, related_type
        )

    @staticmethod
    async def deduct_points(
        session: AsyncSession,
        user_id: int,
        amount: int,
        source: str,
        description: str = "",
        related_id: Optional[int] = None,
        related_type: Optional[str] = None
    ) -> dict:
        """
        Списать баллы

        Raises:
            InsufficientBalanceError: баланс ушёл бы в минус
        """
        validate_positive_amount(amount, "points")
        return await PointsService._apply(
            session, user_id, -amount, "spend", source,
            description, related_id, related_type
        )

    @staticmethod
    async def adjust_points(
        session: AsyncSession,
        user_id: int,
        amount: int,
        description: str = "",
        admin_id: Optional[int] = None
    ) -> dict:
        """
        Ручная корректировка администратором (amount со знаком)
        """
        if not isinstance(amount, int) or amount == 0:
            raise ValidationError("Adjustment amount must be a non-zero integer")
        return await PointsService._apply(
            session, user_id, amount, "admin_adjust", "admin",
            description, admin_id, "admin_user"
        )

    @staticmethod
    async def transfer_points(
        session: AsyncSession,
        from_user_id: int,
        to_user_id: int,
        amount: int,
        description: str = ""
    ) -> dict:
        """
        Перевод баллов между пользователями (обе записи в одной транзакции)
        """
        if from_user_id == to_user_id:
            raise ValidationError("Cannot transfer points to yourself")
        validate_positive_amount(amount, "points")

        locked = await PointsService._lock_users(session, [from_user_id, to_user_id])
        if from_user_id not in locked or to_user_id not in locked:
            raise UserNotFoundError()

        outgoing = await PointsService._apply(
            session, from_user_id, -amount, "transfer_out", "transfer",
            f"Transfer to user {to_user_id}: {description}".rstrip(": "),
            to_user_id, "transfer"
        )
        incoming = await PointsService._apply(
            session, to_user_id, amount, "transfer_in", "transfer",
            f"Transfer from user {from_user_id}: {description}".rstrip(": "),
            from_user_id, "transfer",
            count_towards_total=False
        )
        return {"from": outgoing, "to": incoming}

    @staticmethod
    async def get_user_points_records(
        session: AsyncSession,
        user_id: int,
        limit: int = 20,
        offset: int = 0
    ) -> tuple[list[PointsRecord], int]:
        """
        История изменений баллов (новые первыми)

        Returns:
            (records, total)
        """
        total = await session.scalar(
            select(func.count(PointsRecord.id)).where(PointsRecord.user_id == user_id)
        )
        result = await session.execute(
            select(PointsRecord)
            .where(PointsRecord.user_id == user_id)
            .order_by(PointsRecord.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total or 0

    @staticmethod
    async def batch_grant_points(
        session: AsyncSession,
        user_ids: list[int],
        amount: int,
        source: str = "admin_grant",
        description: str = ""
    ) -> list[dict]:
        """
        Начислить одинаковую сумму списку пользователей

        Несуществующий пользователь не прерывает начисление остальным,
        он попадает в результат с success=False
        """
        validate_positive_amount(amount, "points")
        if not user_ids:
            raise ValidationError("user_ids must not be empty")
        if len(user_ids) > POINTS_BATCH_GRANT_MAX:
            raise ValidationError(f"At most {POINTS_BATCH_GRANT_MAX} users per grant")

        results = []
        # По возрастанию id, как и блокировки при переводе
        for user_id in sorted(set(user_ids)):
            try:
                change = await PointsService.add_points(
                    session, user_id, amount, source, description, related_type="batch_grant"
                )
            except UserNotFoundError as e:
                logger.warning(f"Batch grant skipped user {user_id}: {e.message}")
                results.append({"user_id": user_id, "success": False, "error": e.message})
                continue
            results.append({"user_id": user_id, "success": True, "result": change})

        granted = sum(1 for item in results if item["success"])
        logger.info(f"Batch grant of {amount} points ({source}): {granted}/{len(results)} users")
        return results

    @staticmethod
    async def get_points_statistics(
        session: AsyncSession,
        user_id: Optional[int] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None
    ) -> list[dict]:
        """
        Начисления и списания по (type, source)
        """
        conditions = []
        if user_id is not None:
            conditions.append(PointsRecord.user_id == user_id)
        if date_from:
            conditions.append(PointsRecord.created_at >= date_from)
        if date_to:
            conditions.append(PointsRecord.created_at <= date_to)

        result = await session.execute(
            select(
                PointsRecord.type,
                PointsRecord.source,
                func.count(PointsRecord.id),
                func.coalesce(func.sum(case((PointsRecord.amount > 0, PointsRecord.amount), else_=0)), 0),
                func.coalesce(func.sum(case((PointsRecord.amount < 0, -PointsRecord.amount), else_=0)), 0)
            )
            .where(*conditions)
            .group_by(PointsRecord.type, PointsRecord.source)
            .order_by(PointsRecord.type, PointsRecord.source)
        )
        return [
            {
                "type": record_type,
                "source": source,
                "count": count,
                "total_earned": int(earned),
                "total_spent": int(spent)
            }
            for record_type, source, count, earned, spent in result.all()
        ]

    @staticmethod
    async def get_points_leaderboard(session: AsyncSession, board: str = "current", limit: int = 50) -> list[dict]:
        """
        Рейтинг пользователей с положительным значением;
        равные значения делят место (1, 2, 2, 4)
        """
        field = _leaderboard_field(board)
        result = await session.execute(
            select(User)
            .where(field > 0)
            .order_by(field.desc(), User.id.asc())
            .limit(limit)
        )

        leaderboard = []
        rank, previous = 0, None
        for position, user in enumerate(result.scalars().all(), start=1):
            value = getattr(user, field.key)
            if value != previous:
                rank, previous = position, value
            leaderboard.append({
                "rank": rank,
                "id": user.id,
                "username": user.username,
                "points": user.points,
                "total_points": user.total_points
            })
        return leaderboard

    @staticmethod
    async def get_user_points_rank(session: AsyncSession, user_id: int, board: str = "current") -> dict:
        """
        Место пользователя в рейтинге (None при нулевом значении)
        """
        field = _leaderboard_field(board)
        user = await session.get(User, user_id)
        if not user:
            raise UserNotFoundError()

        value = getattr(user, field.key)
        rank = None
        if value > 0:
            higher = await session.scalar(select(func.count(User.id)).where(field > value))
            rank = (higher or 0) + 1

        return {
            "id": user.id,
            "username": user.username,
            "points": user.points,
            "total_points": user.total_points,
            "rank": rank
        }
