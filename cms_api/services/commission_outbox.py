"""
Outbox комиссий
Событие пишется в транзакции погашения карты, обрабатывается после commit:
сразу (best-effort) и повторно worker'ом
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import COMMISSION_MAX_ATTEMPTS, COMMISSION_OUTBOX_BATCH
from shared.context import ServiceContext
from shared.database import CardKey, VipOrder, transaction
from shared.referral_model import CommissionEvent, CommissionEventStatus, ReferralCommission

logger = logging.getLogger(__name__)


async def enqueue_commission_event(
    session: AsyncSession,
    user_id: int,
    order: VipOrder,
    card_key: Optional[CardKey],
    event_type: str = "card_redeem"
) -> CommissionEvent:
    """
    Записать событие комиссии в текущую транзакцию
    """
    event = CommissionEvent(
        user_id=user_id,
        order_id=order.id,
        card_key_id=card_key.id if card_key is not None else None,
        event_type=event_type,
        status=CommissionEventStatus.PENDING
    )
    session.add(event)
    await session.flush()
    return event


async def _record_failure(ctx: ServiceContext, event_id: int, error: Exception, max_attempts: int):
    try:
        async with transaction(ctx.session_factory) as session:
            event = await session.get(CommissionEvent, event_id)
            if not event:
                return
            event.attempts += 1
            event.last_error = str(error)[:1000]
            if event.attempts >= max_attempts:
                event.status = CommissionEventStatus.FAILED
                logger.error(f"Commission event {event_id} failed after {event.attempts} attempts")
    except Exception as e:
        logger.error(f"Error recording failure of commission event {event_id}: {e}", exc_info=True)


async def dispatch_commission_event(
    ctx: ServiceContext,
    event_id: int,
    max_attempts: int = COMMISSION_MAX_ATTEMPTS
) -> Optional[ReferralCommission]:
    """
    Обработать одно событие в отдельной транзакции

    Returns:
        запись комиссии или None (комиссия не положена / событие уже обработано)

    Raises:
        ошибку обработчика комиссий (попытка учитывается в событии)
    """
    try:
        async with transaction(ctx.session_factory) as session:
            result = await session.execute(
                select(CommissionEvent).where(CommissionEvent.id == event_id).with_for_update()
            )
            event = result.scalar_one_or_none()
            if not event or event.status != CommissionEventStatus.PENDING:
                return None

            order = await session.get(VipOrder, event.order_id)
            card_key = await session.get(CardKey, event.card_key_id) if event.card_key_id else None

            commission = await ctx.commission_processor.process_commission(
                session, event.user_id, order, card_key, event.event_type
            )

            event.attempts += 1
            event.processed_at = datetime.now()
            if commission is not None:
                event.status = CommissionEventStatus.PROCESSED
                event.commission_id = commission.id
            else:
                event.status = CommissionEventStatus.SKIPPED

            logger.info(f"Commission event {event_id} -> {event.status.value}")
            return commission

    except Exception as e:
        logger.error(f"Error processing commission event {event_id}: {e}", exc_info=True)
        await _record_failure(ctx, event_id, e, max_attempts)
        raise


async def drain_pending_events(
    ctx: ServiceContext,
    limit: int = COMMISSION_OUTBOX_BATCH,
    max_attempts: int = COMMISSION_MAX_ATTEMPTS
) -> dict:
    """
    Обработать ожидающие события (старые первыми)
    """
    async with ctx.session_factory() as session:
        result = await session.execute(
            select(CommissionEvent.id)
            .where(CommissionEvent.status == CommissionEventStatus.PENDING)
            .order_by(CommissionEvent.id.asc())
            .limit(limit)
        )
        event_ids = list(result.scalars().all())

    stats = {"processed": 0, "skipped": 0, "errors": 0}
    for event_id in event_ids:
        try:
            commission = await dispatch_commission_event(ctx, event_id, max_attempts)
        except Exception:
            stats["errors"] += 1
            continue
        stats["processed" if commission is not None else "skipped"] += 1

    if event_ids:
        logger.info(f"Commission outbox drained: {stats}")
    return stats
