"""
Сервис ежедневных отметок: одна отметка в день, бонус за серию,
баллы начисляются через PointsService (запись в журнале баллов)
"""
import logging
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import CHECKIN_DEFAULT_DAILY_POINTS
from shared.database import CheckinConfig, User, UserCheckin, UserRole
from shared.validation import ValidationError
from cms_api.services.errors import (
    CheckinAlreadyDoneError, CheckinConfigNotFoundError, CheckinNotConfiguredError, UserNotFoundError
)
from cms_api.services.points_service import PointsService

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "user"
CONFIG_FIELDS = (
    "name", "description", "daily_points", "consecutive_bonus", "monthly_reset", "roles", "is_active"
)


def normalize_bonus(bonus: Optional[dict]) -> dict:
    """{дней подряд: баллы} -> ключи-строки для JSON колонки"""
    normalized = {}
    for days, points in (bonus or {}).items():
        try:
            days, points = int(days), int(points)
        except (TypeError, ValueError):
            raise ValidationError("Consecutive bonus must map days to points")
        if days < 1 or points < 0:
            raise ValidationError("Consecutive bonus days must be positive and points non-negative")
        normalized[str(days)] = points
    return normalized


def streak_bonus(bonus: Optional[dict], streak: int) -> int:
    """
    Бонус за серию: из порогов, кратных длине серии, берётся самый длинный
    ({"7": 50, "30": 300}: 7, 14, 21 день -> 50; 30 день -> 300)
    """
    eligible = [int(days) for days in (bonus or {}) if streak % int(days) == 0]
    if not eligible:
        return 0
    return int(bonus[str(max(eligible))])


def _same_month(first: date, second: date) -> bool:
    return (first.year, first.month) == (second.year, second.month)


class CheckinService:
    """Сервис отметок (вызывается внутри транзакции вызывающего)"""

    # ========== Конфигурации ==========

    @staticmethod
    async def get_all_configs(session: AsyncSession) -> list[CheckinConfig]:
        result = await session.execute(
            select(CheckinConfig).order_by(CheckinConfig.created_at.desc(), CheckinConfig.id.desc())
        )
        return list(result.scalars().all())

    @staticmethod
    async def get_config(session: AsyncSession, config_id: int) -> CheckinConfig:
        config = await session.get(CheckinConfig, config_id)
        if not config:
            raise CheckinConfigNotFoundError()
        return config

    @staticmethod
    async def get_config_for_roles(session: AsyncSession, roles: Optional[set] = None) -> Optional[CheckinConfig]:
        """
        Самая новая активная конфигурация, доступная ролям
        Конфигурация без ролей доступна всем; roles=None - любая активная
        """
        result = await session.execute(
            select(CheckinConfig)
            .where(CheckinConfig.is_active.is_(True))
            .order_by(CheckinConfig.created_at.desc(), CheckinConfig.id.desc())
        )
        for config in result.scalars():
            if roles is None or not config.roles or set(config.roles) & roles:
                return config
        return None

    @staticmethod
    async def create_config(
        session: AsyncSession,
        name: str,
        created_by: Optional[int] = None,
        **data
    ) -> CheckinConfig:
        fields = {key: value for key, value in data.items() if key in CONFIG_FIELDS and value is not None}
        fields.setdefault("daily_points", CHECKIN_DEFAULT_DAILY_POINTS)
        if fields["daily_points"] < 0:
            raise ValidationError("daily_points must not be negative")
        fields["consecutive_bonus"] = normalize_bonus(fields.get("consecutive_bonus"))
        fields["roles"] = list(fields.get("roles") or [])

        config = CheckinConfig(name=name, created_by=created_by, **fields)
        session.add(config)
        await session.flush()
        logger.info(f"Created check-in config {config.id} ({name}), daily_points={config.daily_points}")
        return config

    @staticmethod
    async def update_config(session: AsyncSession, config_id: int, data: dict) -> CheckinConfig:
        updates = {key: value for key, value in data.items() if key in CONFIG_FIELDS and value is not None}
        if not updates:
            raise ValidationError("No update data provided")
        if updates.get("daily_points", 0) < 0:
            raise ValidationError("daily_points must not be negative")
        if "consecutive_bonus" in updates:
            updates["consecutive_bonus"] = normalize_bonus(updates["consecutive_bonus"])
        if "roles" in updates:
            updates["roles"] = list(updates["roles"])

        config = await CheckinService.get_config(session, config_id)
        for key, value in updates.items():
            setattr(config, key, value)
        await session.flush()
        logger.info(f"Updated check-in config {config_id}: {sorted(updates)}")
        return config

    @staticmethod
    async def delete_config(session: AsyncSession, config_id: int) -> CheckinConfig:
        """Удалить можно только выключенную конфигурацию"""
        config = await CheckinService.get_config(session, config_id)
        if config.is_active:
            raise ValidationError("Deactivate the check-in config before deleting it")
        await session.delete(config)
        await session.flush()
        logger.info(f"Deleted check-in config {config_id}")
        return config

    # ========== Отметки ==========

    @staticmethod
    async def get_checkin(session: AsyncSession, user_id: int, checkin_date: date) -> Optional[UserCheckin]:
        result = await session.execute(
            select(UserCheckin).where(
                UserCheckin.user_id == user_id,
                UserCheckin.checkin_date == checkin_date
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _last_checkin(session: AsyncSession, user_id: int, before: date) -> Optional[UserCheckin]:
        result = await session.execute(
            select(UserCheckin)
            .where(UserCheckin.user_id == user_id, UserCheckin.checkin_date < before)
            .order_by(UserCheckin.checkin_date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _user_roles(session: AsyncSession, user_id: int) -> set:
        result = await session.execute(select(UserRole.role).where(UserRole.user_id == user_id))
        return {DEFAULT_ROLE, *result.scalars().all()}

    @staticmethod
    async def _lock_user(session: AsyncSession, user_id: int) -> User:
        # Параллельные отметки одного пользователя выполняются по очереди
        result = await session.execute(
            select(User).where(User.id == user_id).with_for_update()
        )
        user = result.scalar_one_or_none()
        if not user:
            raise UserNotFoundError()
        return user

    @staticmethod
    async def perform_checkin(session: AsyncSession, user_id: int, today: Optional[date] = None) -> dict:
        """
        Отметиться за сегодня

        Серия продолжается, если вчера была отметка; при monthly_reset
        первая отметка месяца начинает серию заново

        Raises:
            CheckinAlreadyDoneError: сегодня уже отмечался
            CheckinNotConfiguredError: нет доступной конфигурации
        """
        today = today or date.today()
        await CheckinService._lock_user(session, user_id)

        if await CheckinService.get_checkin(session, user_id, today):
            raise CheckinAlreadyDoneError()

        roles = await CheckinService._user_roles(session, user_id)
        config = await CheckinService.get_config_for_roles(session, roles)
        if not config:
            raise CheckinNotConfiguredError()

        streak = 0
        last = await CheckinService._last_checkin(session, user_id, before=today)
        if last and last.checkin_date == today - timedelta(days=1):
            if not (config.monthly_reset and not _same_month(last.checkin_date, today)):
                streak = last.consecutive_days
        streak += 1

        bonus_points = streak_bonus(config.consecutive_bonus, streak)
        checkin = UserCheckin(
            user_id=user_id,
            checkin_date=today,
            points_earned=config.daily_points,
            consecutive_days=streak,
            is_bonus=bonus_points > 0,
            bonus_points=bonus_points,
            config_id=config.id
        )
        session.add(checkin)
        await session.flush()

        total = config.daily_points + bonus_points
        points_result = None
        if total > 0:
            if bonus_points:
                description = f"Daily check-in +{config.daily_points}, {streak}-day streak bonus +{bonus_points}"
            else:
                description = f"Daily check-in +{config.daily_points}"
            points_result = await PointsService.add_points(
                session, user_id, total, source="checkin", description=description,
                related_id=checkin.id, related_type="checkin"
            )

        logger.info(f"User {user_id} checked in on {today}: streak={streak}, points={total}")
        return {
            "checkin": checkin,
            "points": points_result,
            "total_points": total,
            "is_bonus": bonus_points > 0,
            "consecutive_days": streak
        }

    @staticmethod
    async def makeup_checkin(
        session: AsyncSession,
        user_id: int,
        checkin_date: date,
        admin_id: Optional[int] = None,
        today: Optional[date] = None
    ) -> dict:
        """
        Отметка задним числом (администратор): только дневные баллы,
        серия не восстанавливается
        """
        today = today or date.today()
        if checkin_date >= today:
            raise ValidationError("Makeup check-in date must be in the past")

        await CheckinService._lock_user(session, user_id)
        if await CheckinService.get_checkin(session, user_id, checkin_date):
            raise CheckinAlreadyDoneError()

        config = await CheckinService.get_config_for_roles(session)
        if not config:
            raise CheckinNotConfiguredError()

        checkin = UserCheckin(
            user_id=user_id,
            checkin_date=checkin_date,
            points_earned=config.daily_points,
            consecutive_days=1,
            config_id=config.id,
            is_makeup=True
        )
        session.add(checkin)
        await session.flush()

        points_result = None
        if config.daily_points > 0:
            points_result = await PointsService.add_points(
                session, user_id, config.daily_points, source="makeup_checkin",
                description=f"Makeup check-in for {checkin_date}",
                related_id=checkin.id, related_type="checkin"
            )

        logger.info(f"Admin {admin_id} added makeup check-in for user {user_id} on {checkin_date}")
        return {"checkin": checkin, "points": points_result, "total_points": config.daily_points}

    # ========== История и статистика ==========

    @staticmethod
    async def get_user_history(
        session: AsyncSession,
        user_id: int,
        limit: int = 30,
        offset: int = 0
    ) -> tuple[list[UserCheckin], int]:
        total = await session.scalar(
            select(func.count(UserCheckin.id)).where(UserCheckin.user_id == user_id)
        )
        result = await session.execute(
            select(UserCheckin)
            .where(UserCheckin.user_id == user_id)
            .order_by(UserCheckin.checkin_date.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total or 0

    @staticmethod
    async def get_current_streak(session: AsyncSession, user_id: int, today: Optional[date] = None) -> int:
        """Серия жива, если последняя отметка сегодня или вчера"""
        today = today or date.today()
        last = await CheckinService._last_checkin(session, user_id, before=today + timedelta(days=1))
        if last and last.checkin_date >= today - timedelta(days=1):
            return last.consecutive_days
        return 0

    @staticmethod
    async def get_user_stats(session: AsyncSession, user_id: int, today: Optional[date] = None) -> dict:
        today = today or date.today()
        if not await session.get(User, user_id):
            raise UserNotFoundError()

        result = await session.execute(
            select(
                func.count(UserCheckin.id),
                func.coalesce(func.sum(UserCheckin.points_earned + UserCheckin.bonus_points), 0),
                func.coalesce(func.max(UserCheckin.consecutive_days), 0),
                func.count(case((UserCheckin.is_bonus.is_(True), 1))),
                func.min(UserCheckin.checkin_date),
                func.max(UserCheckin.checkin_date)
            ).where(UserCheckin.user_id == user_id)
        )
        total, points, max_streak, bonus_count, first_date, last_date = result.one()

        return {
            "user_id": user_id,
            "total_checkins": total or 0,
            "total_points_earned": int(points or 0),
            "max_consecutive_days": max_streak or 0,
            "bonus_count": bonus_count or 0,
            "first_checkin_date": first_date,
            "last_checkin_date": last_date,
            "current_consecutive_days": await CheckinService.get_current_streak(session, user_id, today),
            "checked_in_today": await CheckinService.get_checkin(session, user_id, today) is not None
        }

    @staticmethod
    async def get_statistics(
        session: AsyncSession,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None
    ) -> dict:
        """Сводка по отметкам за период (администратор)"""
        conditions = []
        if date_from:
            conditions.append(UserCheckin.checkin_date >= date_from)
        if date_to:
            conditions.append(UserCheckin.checkin_date <= date_to)

        result = await session.execute(
            select(
                func.count(func.distinct(UserCheckin.user_id)),
                func.count(UserCheckin.id),
                func.coalesce(func.sum(UserCheckin.points_earned + UserCheckin.bonus_points), 0),
                func.count(case((UserCheckin.is_bonus.is_(True), 1))),
                func.avg(UserCheckin.consecutive_days),
                func.coalesce(func.max(UserCheckin.consecutive_days), 0)
            ).where(*conditions)
        )
        users, total, points, bonus, avg_streak, max_streak = result.one()
        return {
            "unique_users": users or 0,
            "total_checkins": total or 0,
            "total_points_distributed": int(points or 0),
            "bonus_checkins": bonus or 0,
            "avg_consecutive_days": round(float(avg_streak or 0), 2),
            "max_consecutive_days": max_streak or 0
        }
