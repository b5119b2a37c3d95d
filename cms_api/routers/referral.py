"""
Endpoints реферальной системы
"""
import logging

from fastapi import APIRouter, Depends, Query

from shared.context import ServiceContext
from shared.database import transaction
from cms_api.dependencies import get_context
from cms_api.schemas import BindInviterRequest, ok
from cms_api.services.referral_service import ReferralService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/referral", tags=["referral"])


@router.post("/bind")
async def bind_inviter(body: BindInviterRequest, ctx: ServiceContext = Depends(get_context)):
    """
    Привязать пригласившего (только один раз)
    """
    async with transaction(ctx.session_factory) as session:
        user = await ReferralService.bind_inviter(session, body.user_id, body.inviter_id)
    return ok({"user_id": user.id, "inviter_id": user.inviter_id}, message="Inviter bound")


@router.get("/summary")
async def commission_summary(user_id: int = Query(...), ctx: ServiceContext = Depends(get_context)):
    async with transaction(ctx.session_factory) as session:
        summary = await ReferralService.get_commission_summary(session, user_id)
    return ok(summary, message="Referral summary")
