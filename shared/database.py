"""
SQLAlchemy модели базы данных
"""
import enum
import logging
from datetime import datetime
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Union

from sqlalchemy import (
    BigInteger, Boolean, Column, DateTime, Integer, JSON,
    Numeric, String, Text, ForeignKey, UniqueConstraint,
    Index, Enum as SQLEnum
)
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from shared.config import DATABASE_URL

logger = logging.getLogger(__name__)

# Создаем базовый класс
Base = declarative_base()


def _async_url(url: str) -> str:
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _values(enum_cls):
    """Хранить в БД значения enum, а не имена"""
    return [member.value for member in enum_cls]


def create_engine(url: str = DATABASE_URL, **kwargs):
    """
    Создать async engine (пул соединений только для PostgreSQL)
    """
    url = _async_url(url)
    if url.startswith("postgresql+asyncpg://"):
        kwargs.setdefault("pool_pre_ping", True)
        kwargs.setdefault("pool_size", 20)
        kwargs.setdefault("max_overflow", 40)
    return create_async_engine(url, echo=False, **kwargs)


# Создаем async engine
engine = create_engine()

# Создаем session maker
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


# ========== Перечисления ==========

class CardKeyType(str, enum.Enum):
    VIP = "vip"
    POINTS = "points"


class CardKeyStatus(str, enum.Enum):
    """Статусы карты: unused -> used | disabled, оба конечные"""
    UNUSED = "unused"
    USED = "used"
    DISABLED = "disabled"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# ========== Награды карт ==========

@dataclass(frozen=True)
class VipReward:
    """VIP уровень на N дней (0 = бессрочно)"""
    level: int
    days: int


@dataclass(frozen=True)
class PointsReward:
    amount: int


CardReward = Union[VipReward, PointsReward]


# ========== Модели ==========

class User(Base):
    """Пользователи"""
    __tablename__ = "users"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    username = Column(String(50), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.now)

    # Баллы
    points = Column(Integer, default=0, nullable=False)
    total_points = Column(Integer, default=0, nullable=False)

    # VIP
    is_vip = Column(Boolean, default=False, nullable=False)
    vip_level = Column(Integer, default=0, nullable=False)
    vip_expire_at = Column(DateTime, nullable=True)  # NULL = бессрочно
    vip_activated_at = Column(DateTime, nullable=True)

    # Реферальная система
    inviter_id = Column(BigInteger().with_variant(Integer, "sqlite"), ForeignKey("users.id"), nullable=True, index=True)
    total_commission_earned = Column(Numeric(10, 2), default=0, nullable=False)
    commission_pending_balance = Column(Numeric(10, 2), default=0, nullable=False)


class UserRole(Base):
    """Роли пользователей"""
    __tablename__ = "user_roles"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    role = Column(String(50), nullable=False)
    created_at = Column(DateTime, default=datetime.now)

    __table_args__ = (
        UniqueConstraint("user_id", "role", name="uq_user_role"),
    )


class VipLevel(Base):
    """Конфигурация уровней VIP"""
    __tablename__ = "vip_levels"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    level = Column(Integer, unique=True, nullable=False, index=True)
    name = Column(String(50), nullable=False)
    display_name = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    benefits = Column(JSON, nullable=True)
    price = Column(Numeric(10, 2), default=0, nullable=False)  # за CARD_VALUE_BASE_DAYS дней
    duration_days = Column(Integer, default=30, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.now)


class CardKey(Base):
    """Карты (одноразовые коды на VIP или баллы)"""
    __tablename__ = "card_keys"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    code = Column(String(32), unique=True, nullable=False, index=True)
    type = Column(
        SQLEnum(CardKeyType, name="card_key_type", values_callable=_values),
        default=CardKeyType.VIP,
        nullable=False
    )
    vip_level = Column(Integer, default=0, nullable=False)
    vip_days = Column(Integer, default=0, nullable=False)
    points = Column(Integer, default=0, nullable=False)
    value_amount = Column(Numeric(10, 2), default=0, nullable=False)
    status = Column(
        SQLEnum(CardKeyStatus, name="card_key_status", values_callable=_values),
        default=CardKeyStatus.UNUSED,
        nullable=False
    )
    expire_at = Column(DateTime, nullable=True)
    batch_id = Column(String(64), nullable=True, index=True)
    created_by = Column(BigInteger, ForeignKey("users.id"), nullable=True, index=True)
    used_by = Column(BigInteger, ForeignKey("users.id"), nullable=True, index=True)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.now)

    __table_args__ = (
        Index("idx_card_key_status_type", "status", "type"),
    )

    @property
    def reward(self) -> CardReward:
        if self.type == CardKeyType.VIP:
            return VipReward(level=self.vip_level, days=self.vip_days)
        if self.type == CardKeyType.POINTS:
            return PointsReward(amount=self.points)
        raise TypeError(f"Unknown card key type: {self.type!r}")

    def __repr__(self):
        return f"<CardKey(code={self.code}, type={self.type}, status={self.status})>"


class VipOrder(Base):
    """Заказы VIP / баллов"""
    __tablename__ = "vip_orders"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    vip_level = Column(Integer, default=0, nullable=False)  # 0 для заказов на баллы
    price = Column(Numeric(10, 2), default=0, nullable=False)
    duration_days = Column(Integer, default=0, nullable=False)
    expire_at = Column(DateTime, nullable=True)
    payment_method = Column(String(50), nullable=False)
    order_no = Column(String(100), unique=True, nullable=False, index=True)
    card_key_code = Column(String(32), nullable=True, index=True)
    status = Column(
        SQLEnum(OrderStatus, name="order_status", values_callable=_values),
        default=OrderStatus.PENDING,
        nullable=False
    )
    created_at = Column(DateTime, default=datetime.now)

    __table_args__ = (
        Index("idx_vip_order_user_status", "user_id", "status"),
    )


class PointsRecord(Base):
    """Журнал изменений баллов (только добавление)"""
    __tablename__ = "points_records"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String(50), nullable=False)  # earn, spend, admin_adjust, transfer_in, transfer_out
    amount = Column(Integer, nullable=False)  # положительное для начисления, отрицательное для списания
    source = Column(String(50), nullable=False)
    description = Column(Text, nullable=True)
    related_id = Column(BigInteger, nullable=True)
    related_type = Column(String(50), nullable=True)
    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.now)

    __table_args__ = (
        Index("idx_points_record_user_created", "user_id", "created_at"),
    )


# ========== Функции для работы с БД ==========

async def init_db(db_engine=None):
    """Инициализация базы данных"""
    async with (db_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """Закрыть соединение с БД"""
    await engine.dispose()


@asynccontextmanager
async def transaction(session_factory: async_sessionmaker) -> AsyncIterator[AsyncSession]:
    """
    Одна транзакция на одно соединение:
    commit при успехе, rollback при любом исключении,
    соединение всегда возвращается в пул
    """
    async with session_factory() as session:
        try:
            async with session.begin():
                yield session
        except Exception:
            logger.debug("Transaction rolled back", exc_info=True)
            raise


# Импортируем модели комиссий после определения всех моделей
from shared.referral_model import CommissionEvent, CommissionEventStatus, ReferralCommission  # noqa: E402,F401
from shared.checkin_model import CheckinConfig, UserCheckin  # noqa: E402,F401
