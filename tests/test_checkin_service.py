from datetime import date

import pytest
from sqlalchemy import select

from shared.database import CheckinConfig, PointsRecord, User, UserCheckin, transaction
from shared.validation import ValidationError
from cms_api.services.checkin_service import CheckinService, streak_bonus
from cms_api.services.errors import (
    CheckinAlreadyDoneError, CheckinNotConfiguredError, UserNotFoundError
)
from cms_api.services.vip_service import VipService

MARCH_1 = date(2026, 3, 1)


async def make_config(session_factory, **data) -> CheckinConfig:
    data.setdefault("daily_points", 10)
    async with transaction(session_factory) as session:
        return await CheckinService.create_config(session, data.pop("name", "default"), **data)


async def check_in(session_factory, user_id, day) -> dict:
    async with transaction(session_factory) as session:
        return await CheckinService.perform_checkin(session, user_id, today=day)


async def balance(session_factory, user_id) -> int:
    async with session_factory() as session:
        return (await session.get(User, user_id)).points


def test_streak_bonus_picks_longest_matching_threshold() -> None:
    bonus = {"7": 50, "30": 300}
    assert streak_bonus(bonus, 5) == 0
    assert streak_bonus(bonus, 7) == 50
    assert streak_bonus(bonus, 14) == 50
    assert streak_bonus(bonus, 30) == 300
    assert streak_bonus(bonus, 210) == 300
    assert streak_bonus({}, 7) == 0


@pytest.mark.asyncio
async def test_daily_checkin_with_streak_bonus(session_factory, users) -> None:
    await make_config(session_factory, consecutive_bonus={3: 20}, monthly_reset=False)
    bob_id = users["bob"].id

    results = [await check_in(session_factory, bob_id, date(2026, 3, day)) for day in (1, 2, 3)]

    assert [r["consecutive_days"] for r in results] == [1, 2, 3]
    assert [r["total_points"] for r in results] == [10, 10, 30]
    assert [r["is_bonus"] for r in results] == [False, False, True]
    assert results[2]["checkin"].bonus_points == 20
    assert await balance(session_factory, bob_id) == 50

    async with session_factory() as session:
        records = (await session.execute(
            select(PointsRecord).where(PointsRecord.user_id == bob_id).order_by(PointsRecord.id)
        )).scalars().all()
    assert [(r.source, r.amount, r.related_type) for r in records] == [
        ("checkin", 10, "checkin"), ("checkin", 10, "checkin"), ("checkin", 30, "checkin")
    ]
    assert records[2].related_id == results[2]["checkin"].id


@pytest.mark.asyncio
async def test_only_one_checkin_per_day(session_factory, users) -> None:
    await make_config(session_factory)
    bob_id = users["bob"].id
    await check_in(session_factory, bob_id, MARCH_1)

    with pytest.raises(CheckinAlreadyDoneError):
        await check_in(session_factory, bob_id, MARCH_1)

    assert await balance(session_factory, bob_id) == 10
    async with session_factory() as session:
        count = len((await session.execute(select(UserCheckin))).scalars().all())
    assert count == 1


@pytest.mark.asyncio
async def test_missed_day_restarts_streak(session_factory, users) -> None:
    await make_config(session_factory, monthly_reset=False)
    bob_id = users["bob"].id

    await check_in(session_factory, bob_id, date(2026, 3, 1))
    await check_in(session_factory, bob_id, date(2026, 3, 2))
    after_gap = await check_in(session_factory, bob_id, date(2026, 3, 4))

    assert after_gap["consecutive_days"] == 1


@pytest.mark.asyncio
async def test_monthly_reset_restarts_streak_on_new_month(session_factory, users) -> None:
    config = await make_config(session_factory, monthly_reset=True)
    bob_id = users["bob"].id

    await check_in(session_factory, bob_id, date(2026, 3, 31))
    first_of_april = await check_in(session_factory, bob_id, date(2026, 4, 1))
    assert first_of_april["consecutive_days"] == 1

    async with transaction(session_factory) as session:
        await CheckinService.update_config(session, config.id, {"monthly_reset": False})

    await check_in(session_factory, bob_id, date(2026, 4, 30))
    may_first = await check_in(session_factory, bob_id, date(2026, 5, 1))
    assert may_first["consecutive_days"] == 2


@pytest.mark.asyncio
async def test_role_bound_config_applies_to_its_roles(session_factory, users) -> None:
    await make_config(session_factory, name="everyone", daily_points=10)
    await make_config(session_factory, name="vip only", daily_points=50, roles=["vip"])

    async with transaction(session_factory) as session:
        await VipService.assign_role(session, users["alice"].id, "vip")

    bob = await check_in(session_factory, users["bob"].id, MARCH_1)
    alice = await check_in(session_factory, users["alice"].id, MARCH_1)

    assert bob["total_points"] == 10
    assert alice["total_points"] == 50


@pytest.mark.asyncio
async def test_checkin_requires_config_and_user(session_factory, users) -> None:
    with pytest.raises(CheckinNotConfiguredError):
        await check_in(session_factory, users["bob"].id, MARCH_1)

    await make_config(session_factory)
    with pytest.raises(UserNotFoundError):
        await check_in(session_factory, 9999, MARCH_1)


@pytest.mark.asyncio
async def test_makeup_checkin(session_factory, users) -> None:
    await make_config(session_factory, daily_points=15)
    bob_id = users["bob"].id
    today = date(2026, 3, 10)

    async with transaction(session_factory) as session:
        result = await CheckinService.makeup_checkin(session, bob_id, date(2026, 3, 5), admin_id=1, today=today)

    assert result["checkin"].is_makeup is True
    assert result["points"]["record"].source == "makeup_checkin"
    assert await balance(session_factory, bob_id) == 15

    async with transaction(session_factory) as session:
        with pytest.raises(CheckinAlreadyDoneError):
            await CheckinService.makeup_checkin(session, bob_id, date(2026, 3, 5), today=today)
        with pytest.raises(ValidationError):
            await CheckinService.makeup_checkin(session, bob_id, today, today=today)


@pytest.mark.asyncio
async def test_user_stats_history_and_admin_statistics(session_factory, users) -> None:
    await make_config(session_factory, consecutive_bonus={2: 5}, monthly_reset=False)
    bob_id, alice_id = users["bob"].id, users["alice"].id
    for day in (1, 2):
        await check_in(session_factory, bob_id, date(2026, 3, day))
    await check_in(session_factory, alice_id, date(2026, 3, 2))

    async with transaction(session_factory) as session:
        stats = await CheckinService.get_user_stats(session, bob_id, today=date(2026, 3, 3))
        history, total = await CheckinService.get_user_history(session, bob_id, limit=1)
        overall = await CheckinService.get_statistics(session)
        second_day = await CheckinService.get_statistics(session, date_from=date(2026, 3, 2))

    assert stats["total_checkins"] == 2
    assert stats["total_points_earned"] == 25
    assert stats["bonus_count"] == 1
    assert stats["current_consecutive_days"] == 2
    assert stats["checked_in_today"] is False
    assert stats["first_checkin_date"] == date(2026, 3, 1)

    assert total == 2
    assert history[0].checkin_date == date(2026, 3, 2)

    assert overall["unique_users"] == 2
    assert overall["total_checkins"] == 3
    assert overall["total_points_distributed"] == 35
    assert second_day["total_checkins"] == 2


@pytest.mark.asyncio
async def test_config_validation_and_delete(session_factory) -> None:
    config = await make_config(session_factory)

    async with transaction(session_factory) as session:
        with pytest.raises(ValidationError):
            await CheckinService.create_config(session, "bad", consecutive_bonus={0: 5})
        with pytest.raises(ValidationError):
            await CheckinService.delete_config(session, config.id)

    async with transaction(session_factory) as session:
        await CheckinService.update_config(session, config.id, {"is_active": False})
        await CheckinService.delete_config(session, config.id)

    async with transaction(session_factory) as session:
        assert await CheckinService.get_all_configs(session) == []
