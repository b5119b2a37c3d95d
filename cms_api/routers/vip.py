"""
Endpoints VIP: уровни, статус пользователя, заказы
"""
import logging

from fastapi import APIRouter, Depends, Query

from shared.context import ServiceContext
from shared.database import transaction
from shared.validation import ValidationError
from cms_api.dependencies import get_context
from cms_api.middleware.auth import require_admin
from cms_api.schemas import (
    ExtendVipRequest, OrderStatusRequest, SetVipRequest, VipLevelCreate, VipLevelUpdate,
    level_to_dict, ok, order_to_dict
)
from cms_api.services.errors import VipLevelNotFoundError
from cms_api.services.pagination import build_pagination
from cms_api.services.vip_service import LEVEL_FIELDS, VipService, vip_snapshot

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/vip", tags=["vip"])

admin_only = [Depends(require_admin)]


# ========== Уровни ==========

@router.get("/levels")
async def get_levels(ctx: ServiceContext = Depends(get_context)):
    async with transaction(ctx.session_factory) as session:
        levels = await VipService.get_all_levels(session)
    return ok([level_to_dict(level) for level in levels], message="VIP levels")


@router.get("/levels/{level}")
async def get_level(level: int, ctx: ServiceContext = Depends(get_context)):
    async with transaction(ctx.session_factory) as session:
        vip_level = await VipService.get_level(session, level)
    if not vip_level:
        raise VipLevelNotFoundError()
    return ok(level_to_dict(vip_level), message="VIP level")


@router.post("/levels", dependencies=admin_only)
async def create_level(body: VipLevelCreate, ctx: ServiceContext = Depends(get_context)):
    data = body.model_dump(exclude={"level", "name"})
    async with transaction(ctx.session_factory) as session:
        vip_level = await VipService.create_level(session, body.level, body.name, **data)
    return ok(level_to_dict(vip_level), message="VIP level created")


@router.put("/levels/{level}", dependencies=admin_only)
async def update_level(level: int, body: VipLevelUpdate, ctx: ServiceContext = Depends(get_context)):
    """
    Обновить уровень; is_active меняется отдельно от остальных полей
    """
    data = body.model_dump(exclude_none=True)
    is_active = data.pop("is_active", None)
    if not data and is_active is None:
        raise ValidationError("No update data provided")

    async with transaction(ctx.session_factory) as session:
        if any(key in LEVEL_FIELDS for key in data):
            vip_level = await VipService.update_level(session, level, data)
        if is_active is not None:
            vip_level = await VipService.set_level_status(session, level, is_active)
    return ok(level_to_dict(vip_level), message="VIP level updated")


@router.delete("/levels/{level}", dependencies=admin_only)
async def delete_level(level: int, ctx: ServiceContext = Depends(get_context)):
    async with transaction(ctx.session_factory) as session:
        vip_level = await VipService.delete_level(session, level)
    return ok(level_to_dict(vip_level), message="VIP level disabled")


# ========== Пользователи ==========

@router.get("/my-info")
async def get_my_vip_info(user_id: int = Query(...), ctx: ServiceContext = Depends(get_context)):
    async with transaction(ctx.session_factory) as session:
        info = await VipService.get_user_vip_info(session, user_id)
    return ok(info, message="VIP info")


@router.get("/my-orders")
async def get_my_orders(
    user_id: int = Query(...),
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    ctx: ServiceContext = Depends(get_context)
):
    async with transaction(ctx.session_factory) as session:
        orders, total = await VipService.get_user_orders(session, user_id, limit, offset)
    return ok(
        [order_to_dict(order) for order in orders],
        message="VIP orders",
        pagination=build_pagination(total, limit, offset)
    )


@router.post("/users/{user_id}/set", dependencies=admin_only)
async def set_user_vip(user_id: int, body: SetVipRequest, ctx: ServiceContext = Depends(get_context)):
    async with transaction(ctx.session_factory) as session:
        user = await VipService.set_user_vip(session, user_id, body.vip_level, body.days)
    return ok(vip_snapshot(user), message="VIP level set")


@router.post("/users/{user_id}/extend", dependencies=admin_only)
async def extend_user_vip(user_id: int, body: ExtendVipRequest, ctx: ServiceContext = Depends(get_context)):
    async with transaction(ctx.session_factory) as session:
        user = await VipService.extend_user_vip(session, user_id, body.days)
    return ok(vip_snapshot(user), message="VIP extended")


@router.delete("/users/{user_id}/cancel", dependencies=admin_only)
async def cancel_user_vip(user_id: int, ctx: ServiceContext = Depends(get_context)):
    async with transaction(ctx.session_factory) as session:
        user = await VipService.cancel_user_vip(session, user_id)
    return ok(vip_snapshot(user), message="VIP cancelled")


# ========== Заказы ==========

@router.put("/orders/{order_id}/status", dependencies=admin_only)
async def update_order_status(
    order_id: int,
    body: OrderStatusRequest,
    ctx: ServiceContext = Depends(get_context)
):
    async with transaction(ctx.session_factory) as session:
        order = await VipService.update_order_status(session, order_id, body.status)
    return ok(order_to_dict(order), message="Order status updated")


@router.get("/orders/{order_id}")
async def get_order(order_id: int, user_id: int = Query(...), ctx: ServiceContext = Depends(get_context)):
    """
    Заказ пользователя; чужой заказ не виден (404)
    """
    async with transaction(ctx.session_factory) as session:
        order = await VipService.get_order_by_id(session, order_id, user_id)
    return ok(order_to_dict(order), message="Order")
