"""
Endpoints ежедневных отметок и их конфигураций
"""
import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query

from shared.context import ServiceContext
from shared.database import transaction
from cms_api.dependencies import get_context
from cms_api.middleware.auth import require_admin
from cms_api.schemas import (
    CheckinConfigCreate, CheckinConfigUpdate, CheckinRequest, MakeupCheckinRequest,
    checkin_config_to_dict, checkin_to_dict, ok, points_change_to_dict
)
from cms_api.services.checkin_service import CheckinService
from cms_api.services.pagination import build_pagination

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/checkin", tags=["checkin"])

admin_only = [Depends(require_admin)]


def checkin_result_to_dict(result: dict) -> dict:
    return {
        "checkin": checkin_to_dict(result["checkin"]),
        "points": points_change_to_dict(result["points"]) if result["points"] else None,
        "total_points": result["total_points"],
        "is_bonus": result.get("is_bonus", False),
        "consecutive_days": result["checkin"].consecutive_days
    }


@router.post("")
async def perform_checkin(body: CheckinRequest, ctx: ServiceContext = Depends(get_context)):
    """
    Отметиться за сегодня
    """
    async with transaction(ctx.session_factory) as session:
        result = await CheckinService.perform_checkin(session, body.user_id)

    if result["is_bonus"]:
        message = f"Checked in: +{result['total_points']} points, {result['consecutive_days']}-day streak bonus"
    else:
        message = f"Checked in: +{result['total_points']} points"
    return ok(checkin_result_to_dict(result), message=message)


@router.get("/status")
async def checkin_status(user_id: int = Query(...), ctx: ServiceContext = Depends(get_context)):
    async with transaction(ctx.session_factory) as session:
        stats = await CheckinService.get_user_stats(session, user_id)
    return ok(stats, message="Check-in status")


@router.get("/history")
async def checkin_history(
    user_id: int = Query(...),
    limit: int = Query(30, ge=1, le=100),
    offset: int = Query(0, ge=0),
    ctx: ServiceContext = Depends(get_context)
):
    async with transaction(ctx.session_factory) as session:
        checkins, total = await CheckinService.get_user_history(session, user_id, limit, offset)
    return ok(
        [checkin_to_dict(checkin) for checkin in checkins],
        message="Check-in history",
        pagination=build_pagination(total, limit, offset)
    )


# ========== Администрирование ==========

@router.get("/configs", dependencies=admin_only)
async def list_configs(ctx: ServiceContext = Depends(get_context)):
    async with transaction(ctx.session_factory) as session:
        configs = await CheckinService.get_all_configs(session)
    return ok([checkin_config_to_dict(config) for config in configs], message="Check-in configs")


@router.post("/configs", dependencies=admin_only)
async def create_config(body: CheckinConfigCreate, ctx: ServiceContext = Depends(get_context)):
    data = body.model_dump(exclude={"name", "created_by"})
    async with transaction(ctx.session_factory) as session:
        config = await CheckinService.create_config(session, body.name, body.created_by, **data)
    return ok(checkin_config_to_dict(config), message="Check-in config created")


@router.put("/configs/{config_id}", dependencies=admin_only)
async def update_config(config_id: int, body: CheckinConfigUpdate, ctx: ServiceContext = Depends(get_context)):
    async with transaction(ctx.session_factory) as session:
        config = await CheckinService.update_config(session, config_id, body.model_dump(exclude_none=True))
    return ok(checkin_config_to_dict(config), message="Check-in config updated")


@router.delete("/configs/{config_id}", dependencies=admin_only)
async def delete_config(config_id: int, ctx: ServiceContext = Depends(get_context)):
    async with transaction(ctx.session_factory) as session:
        config = await CheckinService.delete_config(session, config_id)
    return ok({"id": config.id, "deleted": True}, message="Check-in config deleted")


@router.get("/statistics", dependencies=admin_only)
async def checkin_statistics(
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    ctx: ServiceContext = Depends(get_context)
):
    async with transaction(ctx.session_factory) as session:
        stats = await CheckinService.get_statistics(session, date_from, date_to)
    return ok(stats, message="Check-in statistics")


@router.post("/makeup", dependencies=admin_only)
async def makeup_checkin(body: MakeupCheckinRequest, ctx: ServiceContext = Depends(get_context)):
    async with transaction(ctx.session_factory) as session:
        result = await CheckinService.makeup_checkin(session, body.user_id, body.checkin_date, body.admin_id)
    logger.info(f"Makeup check-in for user {body.user_id} on {body.checkin_date}")
    return ok(checkin_result_to_dict(result), message="Makeup check-in recorded")
