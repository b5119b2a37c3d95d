"""
Админские endpoints карт: генерация, списки, статистика, удаление
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from shared.context import ServiceContext
from shared.database import CardKey, transaction
from cms_api.dependencies import get_context
from cms_api.middleware.auth import require_admin
from cms_api.schemas import (
    CardStatusRequest, GenerateBatchRequest, GenerateCardRequest,
    card_row_to_dict, card_to_dict, ok
)
from cms_api.services.card_key_service import CardKeyService
from cms_api.services.errors import CardKeyNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/admin/card-keys",
    tags=["admin-card-keys"],
    dependencies=[Depends(require_admin)]
)


@router.post("/generate/single")
async def generate_single(body: GenerateCardRequest, ctx: ServiceContext = Depends(get_context)):
    async with transaction(ctx.session_factory) as session:
        card = await CardKeyService.create_card_key(
            session,
            card_type=body.type,
            vip_level=body.vip_level,
            vip_days=body.vip_days,
            points=body.points,
            expire_at=body.expire_at,
            value_amount=body.value_amount,
            created_by=body.created_by
        )

    logger.info(f"Admin generated card key {card.code} ({card.type.value})")
    return ok(card_to_dict(card), message="Card key generated")


@router.post("/generate/batch")
async def generate_batch(body: GenerateBatchRequest, ctx: ServiceContext = Depends(get_context)):
    """
    Сгенерировать партию карт (всё или ничего)
    """
    async with transaction(ctx.session_factory) as session:
        batch = await CardKeyService.create_batch_card_keys(
            session,
            count=body.count,
            card_type=body.type,
            vip_level=body.vip_level,
            vip_days=body.vip_days,
            points=body.points,
            expire_at=body.expire_at,
            value_amount=body.value_amount,
            created_by=body.created_by
        )

    return ok(
        {
            "batch_id": batch["batch_id"],
            "count": batch["count"],
            "card_keys": [card_to_dict(card) for card in batch["card_keys"]]
        },
        message=f"Generated {batch['count']} card keys"
    )


@router.get("/list")
async def list_cards(
    status: Optional[str] = None,
    type: Optional[str] = None,
    batch_id: Optional[str] = None,
    created_by: Optional[int] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    ctx: ServiceContext = Depends(get_context)
):
    async with transaction(ctx.session_factory) as session:
        result = await CardKeyService.get_card_keys(
            session, status, type, batch_id, created_by, limit, offset
        )

    return ok(
        [card_row_to_dict(row) for row in result["data"]],
        message="Card keys",
        pagination=result["pagination"]
    )


@router.get("/statistics")
async def card_statistics(batch_id: Optional[str] = None, ctx: ServiceContext = Depends(get_context)):
    async with transaction(ctx.session_factory) as session:
        stats = await CardKeyService.get_statistics(session, batch_id)
    return ok(stats, message="Card key statistics")


@router.get("/batches")
async def list_batches(
    created_by: Optional[int] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    ctx: ServiceContext = Depends(get_context)
):
    async with transaction(ctx.session_factory) as session:
        result = await CardKeyService.get_batches(session, created_by, limit, offset)
    return ok(result["data"], message="Card key batches", pagination=result["pagination"])


@router.get("/batches/{batch_id}")
async def batch_details(
    batch_id: str,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    ctx: ServiceContext = Depends(get_context)
):
    """
    Карты партии и статистика по ней
    """
    async with transaction(ctx.session_factory) as session:
        result = await CardKeyService.get_batch_details(session, batch_id, limit, offset)

    if result is None:
        raise CardKeyNotFoundError("Batch does not exist")

    return ok(
        {
            "batch_id": batch_id,
            "card_keys": [card_row_to_dict(row) for row in result["data"]],
            "statistics": result["statistics"]
        },
        message="Batch details",
        pagination=result["pagination"]
    )


@router.put("/{card_id}/status")
async def update_card_status(
    card_id: int,
    body: CardStatusRequest,
    ctx: ServiceContext = Depends(get_context)
):
    async with transaction(ctx.session_factory) as session:
        card = await CardKeyService.update_status(session, card_id, body.status)
    return ok(card_to_dict(card), message="Card key status updated")


@router.delete("/{card_id}")
async def delete_card(card_id: int, ctx: ServiceContext = Depends(get_context)):
    """
    Удалить карту; использованные карты не удаляются
    """
    async with transaction(ctx.session_factory) as session:
        if not await session.get(CardKey, card_id):
            raise CardKeyNotFoundError()
        card = await CardKeyService.delete_card_key(session, card_id)

    if card is None:
        return ok({"deleted": False}, message="Only unused card keys can be deleted")
    return ok({"deleted": True, "code": card.code}, message="Card key deleted")


@router.delete("/batches/{batch_id}")
async def delete_batch(batch_id: str, ctx: ServiceContext = Depends(get_context)):
    async with transaction(ctx.session_factory) as session:
        deleted = await CardKeyService.delete_batch(session, batch_id)
    return ok({"batch_id": batch_id, "deleted": deleted}, message=f"Deleted {deleted} unused card keys")
