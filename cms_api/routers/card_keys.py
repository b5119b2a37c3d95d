"""
Пользовательские endpoints карт: погашение, информация, заказы
"""
import logging

from fastapi import APIRouter, Depends, Query

from shared.context import ServiceContext
from shared.database import CardKeyType, transaction
from shared.validation import normalize_card_code
from cms_api.dependencies import get_context
from cms_api.middleware.rate_limit import redeem_rate_limit
from cms_api.schemas import (
    RedeemRequest, card_row_to_dict, card_to_dict, commission_to_dict, ok, order_to_dict, points_change_to_dict
)
from cms_api.services.card_key_service import CardKeyService
from cms_api.services.errors import CardKeyNotFoundError
from cms_api.services.pagination import build_pagination
from cms_api.services.redemption_service import RedemptionService
from cms_api.services.vip_service import VipService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/card-keys", tags=["card-keys"])


def redeem_message(card) -> str:
    if card.type == CardKeyType.VIP:
        if card.vip_days == 0:
            return f"Card key redeemed: permanent VIP level {card.vip_level}"
        return f"Card key redeemed: VIP level {card.vip_level} for {card.vip_days} days"
    return f"Card key redeemed: {card.points} points"


@router.post("/redeem")
async def redeem_card(
    body: RedeemRequest,
    ctx: ServiceContext = Depends(get_context),
    _: bool = Depends(redeem_rate_limit)
):
    """
    Погасить карту
    """
    result = await RedemptionService(ctx).redeem_card_key(body.code, body.user_id)
    card = result.card_key

    return ok(
        {
            "card_key": card_to_dict(card),
            "card_type": card.type.value,
            "vip_level": card.vip_level,
            "vip_days": card.vip_days,
            "points": card.points,
            "vip_result": result.vip_result,
            "points_result": points_change_to_dict(result.points_result) if result.points_result else None,
            "order": order_to_dict(result.order),
            "commission": commission_to_dict(result.commission)
        },
        message=redeem_message(card)
    )


@router.get("/info/{code}")
async def get_card_info(
    code: str,
    user_id: int = Query(None),
    ctx: ServiceContext = Depends(get_context)
):
    """
    Информация о карте; полная - только для погасившего пользователя
    """
    code = normalize_card_code(code)
    async with transaction(ctx.session_factory) as session:
        row = await CardKeyService.get_by_code(session, code)

    if not row:
        raise CardKeyNotFoundError()

    card = row["card"]
    if user_id is not None and card.used_by == user_id:
        data = card_row_to_dict(row)
        data.pop("created_by", None)
        data.pop("created_by_username", None)
    else:
        data = {
            "code": card.code,
            "type": card.type.value,
            "status": card.status.value,
            "expire_at": card.expire_at
        }
    return ok(data, message="Card key info")


@router.get("/my-orders")
async def get_my_card_orders(
    user_id: int = Query(...),
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    ctx: ServiceContext = Depends(get_context)
):
    async with transaction(ctx.session_factory) as session:
        orders, total = await VipService.get_card_key_orders(session, user_id, limit, offset)

    return ok(
        [order_to_dict(order) for order in orders],
        message="Card key orders",
        pagination=build_pagination(total, limit, offset)
    )
