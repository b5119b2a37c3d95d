from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from shared.context import ServiceContext
from shared.database import transaction
from shared.referral_model import CommissionEvent, CommissionEventStatus
from cms_api.services.card_key_service import CardKeyService
from cms_api.services.commission_outbox import dispatch_commission_event, drain_pending_events
from cms_api.services.redemption_service import RedemptionService


async def redeem_with(processor, session_factory, user_id):
    ctx = ServiceContext(session_factory=session_factory, commission_processor=processor)
    async with transaction(session_factory) as session:
        card = await CardKeyService.create_card_key(session, card_type="vip", vip_level=1, vip_days=30)
    return await RedemptionService(ctx).redeem_card_key(card.code, user_id)


async def events(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(CommissionEvent).order_by(CommissionEvent.id))
        return result.scalars().all()


@pytest.mark.asyncio
async def test_failed_event_is_retried_by_drain(
    ctx, session_factory, users, vip_levels, failing_processor
) -> None:
    await redeem_with(failing_processor, session_factory, users["alice"].id)
    [event] = await events(session_factory)
    assert event.status == CommissionEventStatus.PENDING

    stats = await drain_pending_events(ctx)

    assert stats == {"processed": 1, "skipped": 0, "errors": 0}
    [event] = await events(session_factory)
    assert event.status == CommissionEventStatus.PROCESSED
    assert event.attempts == 2
    assert event.commission_id is not None


@pytest.mark.asyncio
async def test_event_fails_after_max_attempts(session_factory, users, vip_levels, failing_processor) -> None:
    await redeem_with(failing_processor, session_factory, users["alice"].id)
    ctx = ServiceContext(session_factory=session_factory, commission_processor=failing_processor)

    assert await drain_pending_events(ctx, max_attempts=3) == {"processed": 0, "skipped": 0, "errors": 1}
    assert await drain_pending_events(ctx, max_attempts=3) == {"processed": 0, "skipped": 0, "errors": 1}

    [event] = await events(session_factory)
    assert event.status == CommissionEventStatus.FAILED
    assert event.attempts == 3

    # Событие в статусе failed больше не обрабатывается
    assert await drain_pending_events(ctx, max_attempts=3) == {"processed": 0, "skipped": 0, "errors": 0}


@pytest.mark.asyncio
async def test_processed_event_is_not_dispatched_again(ctx, session_factory, users, vip_levels) -> None:
    processor = AsyncMock()
    processor.process_commission.return_value = None
    await redeem_with(processor, session_factory, users["bob"].id)
    [event] = await events(session_factory)

    assert await dispatch_commission_event(ctx, event.id) is None
    assert processor.process_commission.await_count == 1
