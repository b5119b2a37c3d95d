"""
Модели ежедневных отметок (check-in) и их конфигураций
"""
from datetime import datetime

from sqlalchemy import (
    BigInteger, Boolean, Column, Date, DateTime, Integer, JSON, String, Text,
    UniqueConstraint, Index
)

from shared.database import Base


class CheckinConfig(Base):
    """Правила начисления за отметку"""
    __tablename__ = "checkin_configs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    daily_points = Column(Integer, default=10, nullable=False)
    consecutive_bonus = Column(JSON, nullable=False, default=dict)  # {"7": 50} - каждые 7 дней подряд +50
    monthly_reset = Column(Boolean, default=True, nullable=False)  # серия обнуляется с новым месяцем
    roles = Column(JSON, nullable=False, default=list)  # пусто = для всех
    is_active = Column(Boolean, default=True, nullable=False)
    created_by = Column(BigInteger, nullable=True)
    created_at = Column(DateTime, default=datetime.now)


class UserCheckin(Base):
    """Отметки пользователей (не больше одной в день)"""
    __tablename__ = "user_checkins"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False, index=True)
    checkin_date = Column(Date, nullable=False)
    points_earned = Column(Integer, default=0, nullable=False)
    consecutive_days = Column(Integer, default=1, nullable=False)
    is_bonus = Column(Boolean, default=False, nullable=False)
    bonus_points = Column(Integer, default=0, nullable=False)
    config_id = Column(BigInteger, nullable=True)
    is_makeup = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.now)

    __table_args__ = (
        UniqueConstraint("user_id", "checkin_date", name="uq_user_checkin_date"),
        Index("idx_user_checkin_date", "checkin_date"),
    )
