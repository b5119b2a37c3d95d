"""
Модели реферальных комиссий и outbox событий комиссий
"""
import enum
from datetime import datetime

from sqlalchemy import (
    BigInteger, Column, DateTime, Integer, Numeric, String, Text,
    Enum as SQLEnum, Index
)

from shared.database import Base, _values


class CommissionStatus(str, enum.Enum):
    """Статусы комиссии"""
    PENDING = "pending"  # Начислена, ждёт выплаты
    SETTLED = "settled"  # Выплачена
    CANCELLED = "cancelled"


class CommissionEventStatus(str, enum.Enum):
    """Статусы события в outbox"""
    PENDING = "pending"  # Ждёт обработки
    PROCESSED = "processed"  # Комиссия создана
    SKIPPED = "skipped"  # Комиссия не положена (нет пригласившего, нулевая сумма)
    FAILED = "failed"  # Исчерпаны попытки


class ReferralCommission(Base):
    """Комиссии пригласивших"""
    __tablename__ = "referral_commissions"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    inviter_id = Column(BigInteger, nullable=False, index=True)  # Кто пригласил
    invitee_id = Column(BigInteger, nullable=False, index=True)  # Кто оплатил
    order_id = Column(BigInteger, nullable=True, unique=True)
    card_key_id = Column(BigInteger, nullable=True)
    order_amount = Column(Numeric(10, 2), nullable=False)
    commission_amount = Column(Numeric(10, 2), nullable=False)
    commission_rate = Column(Numeric(5, 4), nullable=False)
    event_type = Column(String(50), nullable=False)  # first_recharge, renewal
    status = Column(
        SQLEnum(CommissionStatus, name="commission_status", values_callable=_values),
        default=CommissionStatus.PENDING,
        nullable=False
    )
    created_at = Column(DateTime, default=datetime.now)

    __table_args__ = (
        Index('idx_commission_inviter_status', 'inviter_id', 'status'),
    )


class CommissionEvent(Base):
    """
    Outbox: запись создаётся в транзакции погашения карты,
    обработка идёт строго после commit
    """
    __tablename__ = "commission_events"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False, index=True)
    order_id = Column(BigInteger, nullable=False)
    card_key_id = Column(BigInteger, nullable=True)
    event_type = Column(String(50), nullable=False)  # card_redeem
    status = Column(
        SQLEnum(CommissionEventStatus, name="commission_event_status", values_callable=_values),
        default=CommissionEventStatus.PENDING,
        nullable=False
    )
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    commission_id = Column(BigInteger, nullable=True)
    created_at = Column(DateTime, default=datetime.now)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_commission_event_status', 'status', 'id'),
    )
