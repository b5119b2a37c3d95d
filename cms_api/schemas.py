"""
Модели запросов и сериализация ответов API
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from shared.database import CardKey, CheckinConfig, PointsRecord, UserCheckin, VipLevel, VipOrder
from shared.referral_model import ReferralCommission
from shared.validation import to_local_naive


# ========== Запросы ==========

class RedeemRequest(BaseModel):
    """Погашение карты"""
    code: str
    user_id: int


class GenerateCardRequest(BaseModel):
    """Генерация одной карты"""
    type: str = "vip"
    vip_level: int = 1
    vip_days: int = 30
    points: int = 0
    expire_at: Optional[datetime] = None
    value_amount: Optional[Decimal] = None
    created_by: Optional[int] = None

    @field_validator("expire_at")
    @classmethod
    def expire_at_local(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_local_naive(value)


class GenerateBatchRequest(GenerateCardRequest):
    count: int = Field(..., ge=1)


class CardStatusRequest(BaseModel):
    status: str


class VipLevelCreate(BaseModel):
    level: int
    name: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    benefits: Optional[Any] = None
    price: Optional[Decimal] = None
    duration_days: Optional[int] = None


class VipLevelUpdate(BaseModel):
    name: Optional[str] = None
    display_name: Optional[str] = None
    description: Optional[str] = None
    benefits: Optional[Any] = None
    price: Optional[Decimal] = None
    duration_days: Optional[int] = None
    is_active: Optional[bool] = None


class SetVipRequest(BaseModel):
    vip_level: int
    days: int = 30


class ExtendVipRequest(BaseModel):
    days: int


class OrderStatusRequest(BaseModel):
    status: str


class TransferPointsRequest(BaseModel):
    from_user_id: int
    to_user_id: int
    amount: int
    description: str = ""


class BindInviterRequest(BaseModel):
    user_id: int
    inviter_id: int


class AdjustPointsRequest(BaseModel):
    amount: int
    description: str = ""
    admin_id: Optional[int] = None


class BatchGrantRequest(BaseModel):
    user_ids: list[int] = Field(..., min_length=1)
    amount: int
    source: str = "admin_grant"
    description: str = ""


class CheckinRequest(BaseModel):
    user_id: int


class MakeupCheckinRequest(BaseModel):
    """Отметка задним числом"""
    user_id: int
    checkin_date: date
    admin_id: Optional[int] = None


class CheckinConfigCreate(BaseModel):
    name: str
    description: Optional[str] = None
    daily_points: Optional[int] = Field(None, ge=0)
    consecutive_bonus: dict[int, int] = Field(default_factory=dict)
    monthly_reset: bool = True
    roles: list[str] = Field(default_factory=list)
    is_active: bool = True
    created_by: Optional[int] = None


class CheckinConfigUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    daily_points: Optional[int] = Field(None, ge=0)
    consecutive_bonus: Optional[dict[int, int]] = None
    monthly_reset: Optional[bool] = None
    roles: Optional[list[str]] = None
    is_active: Optional[bool] = None


# ========== Ответы ==========

def ok(data: Any = None, message: str = "OK", **extra) -> dict:
    """Успешный ответ в общем формате"""
    body = {"success": True, "message": message, "data": data}
    body.update(extra)
    return body


def card_to_dict(card: CardKey, **extra) -> dict:
    data = {
        "id": card.id,
        "code": card.code,
        "type": card.type.value,
        "vip_level": card.vip_level,
        "vip_days": card.vip_days,
        "points": card.points,
        "value_amount": card.value_amount,
        "status": card.status.value,
        "expire_at": card.expire_at,
        "is_expired": bool(card.expire_at and card.expire_at < datetime.now()),
        "batch_id": card.batch_id,
        "created_by": card.created_by,
        "used_by": card.used_by,
        "used_at": card.used_at,
        "created_at": card.created_at
    }
    data.update(extra)
    return data


def card_row_to_dict(row: dict) -> dict:
    """Строка из CardKeyService (карта + имена пользователей)"""
    return card_to_dict(
        row["card"],
        used_by_username=row["used_by_username"],
        created_by_username=row["created_by_username"]
    )


def order_to_dict(order: Optional[VipOrder]) -> Optional[dict]:
    if order is None:
        return None
    return {
        "id": order.id,
        "order_no": order.order_no,
        "user_id": order.user_id,
        "vip_level": order.vip_level,
        "price": order.price,
        "duration_days": order.duration_days,
        "expire_at": order.expire_at,
        "payment_method": order.payment_method,
        "card_key_code": order.card_key_code,
        "status": order.status.value,
        "created_at": order.created_at
    }


def level_to_dict(level: VipLevel) -> dict:
    return {
        "id": level.id,
        "level": level.level,
        "name": level.name,
        "display_name": level.display_name,
        "description": level.description,
        "benefits": level.benefits,
        "price": level.price,
        "duration_days": level.duration_days,
        "is_active": level.is_active
    }


def points_record_to_dict(record: PointsRecord) -> dict:
    return {
        "id": record.id,
        "user_id": record.user_id,
        "type": record.type,
        "amount": record.amount,
        "source": record.source,
        "description": record.description,
        "related_id": record.related_id,
        "related_type": record.related_type,
        "balance_before": record.balance_before,
        "balance_after": record.balance_after,
        "created_at": record.created_at
    }


def points_change_to_dict(result: dict) -> dict:
    """Результат PointsService._apply"""
    return {
        "user": result["user"],
        "record": points_record_to_dict(result["record"])
    }


def commission_to_dict(commission: Optional[ReferralCommission]) -> Optional[dict]:
    if commission is None:
        return None
    return {
        "id": commission.id,
        "inviter_id": commission.inviter_id,
        "invitee_id": commission.invitee_id,
        "order_id": commission.order_id,
        "order_amount": commission.order_amount,
        "commission_amount": commission.commission_amount,
        "commission_rate": commission.commission_rate,
        "event_type": commission.event_type,
        "status": commission.status.value
    }


def checkin_to_dict(checkin: UserCheckin) -> dict:
    return {
        "id": checkin.id,
        "user_id": checkin.user_id,
        "checkin_date": checkin.checkin_date,
        "points_earned": checkin.points_earned,
        "bonus_points": checkin.bonus_points,
        "is_bonus": checkin.is_bonus,
        "consecutive_days": checkin.consecutive_days,
        "config_id": checkin.config_id,
        "is_makeup": checkin.is_makeup,
        "created_at": checkin.created_at
    }


def checkin_config_to_dict(config: CheckinConfig) -> dict:
    return {
        "id": config.id,
        "name": config.name,
        "description": config.description,
        "daily_points": config.daily_points,
        "consecutive_bonus": config.consecutive_bonus,
        "monthly_reset": config.monthly_reset,
        "roles": config.roles,
        "is_active": config.is_active,
        "created_by": config.created_by,
        "created_at": config.created_at
    }
