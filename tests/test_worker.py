import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from shared.context import ServiceContext
from shared.database import User, transaction
from shared.referral_model import CommissionEvent, CommissionEventStatus
from cms_api.services.card_key_service import CardKeyService
from cms_api.services.redemption_service import RedemptionService
from cms_api.services.vip_service import VipService
from worker.commission_drain import CommissionOutboxDrainer
from worker.vip_expiry import VipExpirySweeper


@pytest.mark.asyncio
async def test_vip_sweeper_expires_members(ctx, session_factory, users) -> None:
    async with transaction(session_factory) as session:
        await VipService.set_user_vip(session, users["bob"].id, 1, 30)
        bob = await session.get(User, users["bob"].id)
        bob.vip_expire_at = datetime.now() - timedelta(seconds=1)

    expired = await VipExpirySweeper(ctx).run_once()

    assert [user["username"] for user in expired] == ["bob"]
    async with session_factory() as session:
        assert (await session.get(User, users["bob"].id)).is_vip is False


@pytest.mark.asyncio
async def test_drainer_settles_pending_commission(
    ctx, session_factory, users, vip_levels, failing_processor
) -> None:
    failing_ctx = ServiceContext(session_factory=session_factory, commission_processor=failing_processor)
    async with transaction(session_factory) as session:
        card = await CardKeyService.create_card_key(session, card_type="vip", vip_level=1, vip_days=30)
    await RedemptionService(failing_ctx).redeem_card_key(card.code, users["alice"].id)

    stats = await CommissionOutboxDrainer(ctx).run_once()

    assert stats["processed"] == 1
    async with session_factory() as session:
        event = (await session.execute(select(CommissionEvent))).scalar_one()
    assert event.status == CommissionEventStatus.PROCESSED


@pytest.mark.asyncio
async def test_loop_survives_errors_and_stops(ctx, monkeypatch) -> None:
    drainer = CommissionOutboxDrainer(ctx, check_interval=0)
    calls = {"n": 0}

    async def flaky_run_once():
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("database unavailable")
        drainer.stop()
        return {"processed": 0, "skipped": 0, "errors": 0}

    monkeypatch.setattr(drainer, "run_once", flaky_run_once)

    await asyncio.wait_for(drainer.start(), timeout=5)

    assert calls["n"] == 2
    assert drainer.running is False


@pytest.mark.asyncio
async def test_worker_with_injected_context_leaves_global_engine_alone(ctx, monkeypatch) -> None:
    from unittest.mock import AsyncMock

    from worker import main as worker_main

    init_db, close_db, close_redis = AsyncMock(), AsyncMock(), AsyncMock()
    monkeypatch.setattr(worker_main, "init_db", init_db)
    monkeypatch.setattr(worker_main, "close_db", close_db)
    monkeypatch.setattr(worker_main, "close_redis", close_redis)

    worker = worker_main.Worker(ctx)
    assert worker.ctx is ctx

    task = asyncio.create_task(worker.start())
    await asyncio.sleep(0.1)
    worker.stop()
    await asyncio.wait_for(task, timeout=5)

    init_db.assert_not_awaited()
    close_db.assert_not_awaited()
    close_redis.assert_awaited_once()
    assert worker.tasks == []
