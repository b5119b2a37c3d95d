"""
Endpoints баллов
"""
import logging

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from shared.context import ServiceContext
from shared.database import transaction
from cms_api.dependencies import get_context
from cms_api.middleware.auth import require_admin
from cms_api.schemas import (
    AdjustPointsRequest, BatchGrantRequest, TransferPointsRequest, ok, points_change_to_dict, points_record_to_dict
)
from cms_api.services.pagination import build_pagination
from cms_api.services.points_service import PointsService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/points", tags=["points"])


@router.post("/transfer")
async def transfer_points(body: TransferPointsRequest, ctx: ServiceContext = Depends(get_context)):
    """
    Перевод баллов: списание и зачисление в одной транзакции
    """
    async with transaction(ctx.session_factory) as session:
        result = await PointsService.transfer_points(
            session, body.from_user_id, body.to_user_id, body.amount, body.description
        )
    return ok(
        {
            "from": points_change_to_dict(result["from"]),
            "to": points_change_to_dict(result["to"])
        },
        message=f"Transferred {body.amount} points"
    )


@router.get("/leaderboard")
async def points_leaderboard(
    type: str = "current",
    limit: int = Query(50, ge=1, le=100),
    ctx: ServiceContext = Depends(get_context)
):
    """
    Рейтинг по балансу (type=current) или по всем начислениям (type=total)
    """
    async with transaction(ctx.session_factory) as session:
        leaderboard = await PointsService.get_points_leaderboard(session, type, limit)
    return ok(leaderboard, message="Points leaderboard")


@router.get("/statistics", dependencies=[Depends(require_admin)])
async def points_statistics(
    user_id: Optional[int] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    ctx: ServiceContext = Depends(get_context)
):
    async with transaction(ctx.session_factory) as session:
        stats = await PointsService.get_points_statistics(session, user_id, date_from, date_to)
    return ok(stats, message="Points statistics")


@router.post("/batch-grant", dependencies=[Depends(require_admin)])
async def batch_grant(body: BatchGrantRequest, ctx: ServiceContext = Depends(get_context)):
    async with transaction(ctx.session_factory) as session:
        results = await PointsService.batch_grant_points(
            session, body.user_ids, body.amount, body.source, body.description
        )

    granted = [item for item in results if item["success"]]
    return ok(
        [
            {
                "user_id": item["user_id"],
                "success": item["success"],
                "error": item.get("error"),
                "points": item["result"]["user"]["points"] if item["success"] else None
            }
            for item in results
        ],
        message=f"Granted {body.amount} points to {len(granted)} users"
    )


@router.get("/{user_id}")
async def get_points(user_id: int, ctx: ServiceContext = Depends(get_context)):
    async with transaction(ctx.session_factory) as session:
        points = await PointsService.get_user_points(session, user_id)
    return ok(points, message="Points balance")


@router.get("/{user_id}/records")
async def get_points_records(
    user_id: int,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    ctx: ServiceContext = Depends(get_context)
):
    async with transaction(ctx.session_factory) as session:
        records, total = await PointsService.get_user_points_records(session, user_id, limit, offset)
    return ok(
        [points_record_to_dict(record) for record in records],
        message="Points records",
        pagination=build_pagination(total, limit, offset)
    )


@router.get("/{user_id}/rank")
async def get_points_rank(user_id: int, type: str = "current", ctx: ServiceContext = Depends(get_context)):
    async with transaction(ctx.session_factory) as session:
        rank = await PointsService.get_user_points_rank(session, user_id, type)
    return ok(rank, message="Points rank")

@router.post("/{user_id}/adjust", dependencies=[Depends(require_admin)])
async def adjust_points(user_id: int, body: AdjustPointsRequest, ctx: ServiceContext = Depends(get_context)):
    async with transaction(ctx.session_factory) as session:
        result = await PointsService.adjust_points(
            session, user_id, body.amount, body.description, body.admin_id
        )
    return ok(points_change_to_dict(result), message="Points adjusted")
