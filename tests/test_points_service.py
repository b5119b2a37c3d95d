import pytest
from sqlalchemy import select
from sqlalchemy.dialects import postgresql

from shared.database import PointsRecord, User, transaction
from shared.validation import ValidationError
from cms_api.services.errors import InsufficientBalanceError, UserNotFoundError
from cms_api.services.points_service import PointsService


async def all_records(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(PointsRecord).order_by(PointsRecord.id))
        return result.scalars().all()


@pytest.mark.asyncio
async def test_add_and_deduct_write_ledger(session_factory, users) -> None:
    bob_id = users["bob"].id
    async with transaction(session_factory) as session:
        await PointsService.add_points(session, bob_id, 50, source="checkin")
        result = await PointsService.deduct_points(session, bob_id, 20, source="download", related_id=7)

    assert result["user"] == {"points": 30, "total_points": 50}

    records = await all_records(session_factory)
    assert [(r.type, r.amount, r.balance_before, r.balance_after) for r in records] == [
        ("earn", 50, 0, 50),
        ("spend", -20, 50, 30),
    ]
    assert records[1].related_id == 7


@pytest.mark.asyncio
async def test_deduct_never_goes_negative(session_factory, users) -> None:
    bob_id = users["bob"].id
    async with transaction(session_factory) as session:
        await PointsService.add_points(session, bob_id, 10, source="checkin")

    with pytest.raises(InsufficientBalanceError):
        async with transaction(session_factory) as session:
            await PointsService.deduct_points(session, bob_id, 11, source="download")

    async with transaction(session_factory) as session:
        balance = await PointsService.get_user_points(session, bob_id)
    assert balance["points"] == 10
    assert len(await all_records(session_factory)) == 1


@pytest.mark.asyncio
async def test_amount_validation(session_factory, users) -> None:
    async with transaction(session_factory) as session:
        with pytest.raises(ValidationError):
            await PointsService.add_points(session, users["bob"].id, 0, source="x")
        with pytest.raises(ValidationError):
            await PointsService.deduct_points(session, users["bob"].id, -5, source="x")
        with pytest.raises(ValidationError):
            await PointsService.adjust_points(session, users["bob"].id, 0)
        with pytest.raises(UserNotFoundError):
            await PointsService.add_points(session, 9999, 5, source="x")


@pytest.mark.asyncio
async def test_admin_adjust_signed(session_factory, users) -> None:
    bob_id = users["bob"].id
    async with transaction(session_factory) as session:
        await PointsService.adjust_points(session, bob_id, 40, "bonus", admin_id=1)
        result = await PointsService.adjust_points(session, bob_id, -15, "correction", admin_id=1)

    assert result["user"]["points"] == 25
    assert result["record"].type == "admin_adjust"
    assert result["record"].source == "admin"

    with pytest.raises(InsufficientBalanceError):
        async with transaction(session_factory) as session:
            await PointsService.adjust_points(session, bob_id, -100)


@pytest.mark.asyncio
async def test_transfer_moves_points_atomically(session_factory, users) -> None:
    alice_id, bob_id = users["alice"].id, users["bob"].id
    async with transaction(session_factory) as session:
        await PointsService.add_points(session, alice_id, 100, source="checkin")

    async with transaction(session_factory) as session:
        result = await PointsService.transfer_points(session, alice_id, bob_id, 30, "gift")

    assert result["from"]["user"]["points"] == 70
    assert result["to"]["user"] == {"points": 30, "total_points": 0}

    with pytest.raises(InsufficientBalanceError):
        async with transaction(session_factory) as session:
            await PointsService.transfer_points(session, bob_id, alice_id, 31)

    async with session_factory() as session:
        alice = await session.get(User, alice_id)
        bob = await session.get(User, bob_id)
    assert (alice.points, bob.points) == (70, 30)

    types = [record.type for record in await all_records(session_factory)]
    assert types == ["earn", "transfer_out", "transfer_in"]


@pytest.mark.asyncio
async def test_transfer_rejects_self_and_missing_recipient(session_factory, users) -> None:
    alice_id = users["alice"].id
    async with transaction(session_factory) as session:
        await PointsService.add_points(session, alice_id, 10, source="checkin")
        with pytest.raises(ValidationError):
            await PointsService.transfer_points(session, alice_id, alice_id, 5)
        with pytest.raises(UserNotFoundError):
            await PointsService.transfer_points(session, alice_id, 9999, 5)


@pytest.mark.asyncio
async def test_transfer_locks_both_users_in_id_order(session_factory, users, monkeypatch) -> None:
    alice_id, bob_id = users["alice"].id, users["bob"].id
    assert alice_id < bob_id

    async with transaction(session_factory) as session:
        await PointsService.add_points(session, bob_id, 10, source="checkin")

    async with transaction(session_factory) as session:
        statements = []
        execute = session.execute

        async def recording_execute(statement, *args, **kwargs):
            statements.append(statement)
            return await execute(statement, *args, **kwargs)

        monkeypatch.setattr(session, "execute", recording_execute)
        await PointsService.transfer_points(session, bob_id, alice_id, 5)

    first_lock = str(statements[0].compile(dialect=postgresql.dialect()))
    assert "FOR UPDATE" in first_lock
    assert "ORDER BY users.id" in first_lock
    assert "IN" in first_lock


@pytest.mark.asyncio
async def test_records_are_paginated_newest_first(session_factory, users) -> None:
    bob_id = users["bob"].id
    async with transaction(session_factory) as session:
        for amount in (1, 2, 3):
            await PointsService.add_points(session, bob_id, amount, source="checkin")

    async with transaction(session_factory) as session:
        records, total = await PointsService.get_user_points_records(session, bob_id, limit=2)

    assert total == 3
    assert [record.amount for record in records] == [3, 2]


@pytest.mark.asyncio
async def test_leaderboard_and_rank_share_places_on_ties(session_factory, users) -> None:
    inviter_id, alice_id, bob_id = users["inviter"].id, users["alice"].id, users["bob"].id
    async with transaction(session_factory) as session:
        await PointsService.add_points(session, alice_id, 50, source="checkin")
        await PointsService.add_points(session, bob_id, 50, source="checkin")
        await PointsService.add_points(session, inviter_id, 80, source="checkin")
        await PointsService.deduct_points(session, inviter_id, 70, source="download")

    async with transaction(session_factory) as session:
        current = await PointsService.get_points_leaderboard(session, "current")
        total = await PointsService.get_points_leaderboard(session, "total", limit=1)
        alice_rank = await PointsService.get_user_points_rank(session, alice_id)
        inviter_rank = await PointsService.get_user_points_rank(session, inviter_id)
        with pytest.raises(ValidationError):
            await PointsService.get_points_leaderboard(session, "weekly")

    assert [(row["rank"], row["id"]) for row in current] == [(1, alice_id), (1, bob_id), (3, inviter_id)]
    assert [(row["rank"], row["id"], row["total_points"]) for row in total] == [(1, inviter_id, 80)]
    assert alice_rank["rank"] == 1
    assert inviter_rank["rank"] == 3


@pytest.mark.asyncio
async def test_rank_is_empty_without_points(session_factory, users) -> None:
    async with transaction(session_factory) as session:
        rank = await PointsService.get_user_points_rank(session, users["bob"].id, "total")
        with pytest.raises(UserNotFoundError):
            await PointsService.get_user_points_rank(session, 9999)
    assert rank["rank"] is None


@pytest.mark.asyncio
async def test_points_statistics_by_type_and_source(session_factory, users) -> None:
    alice_id, bob_id = users["alice"].id, users["bob"].id
    async with transaction(session_factory) as session:
        await PointsService.add_points(session, alice_id, 30, source="checkin")
        await PointsService.add_points(session, bob_id, 20, source="checkin")
        await PointsService.deduct_points(session, bob_id, 5, source="download")

    async with transaction(session_factory) as session:
        overall = await PointsService.get_points_statistics(session)
        for_bob = await PointsService.get_points_statistics(session, user_id=bob_id)

    assert overall == [
        {"type": "earn", "source": "checkin", "count": 2, "total_earned": 50, "total_spent": 0},
        {"type": "spend", "source": "download", "count": 1, "total_earned": 0, "total_spent": 5},
    ]
    assert [row["total_earned"] for row in for_bob if row["type"] == "earn"] == [20]


@pytest.mark.asyncio
async def test_batch_grant_skips_missing_users(session_factory, users) -> None:
    alice_id, bob_id = users["alice"].id, users["bob"].id
    async with transaction(session_factory) as session:
        results = await PointsService.batch_grant_points(
            session, [bob_id, 9999, alice_id, bob_id], 25, description="launch bonus"
        )

    assert [(item["user_id"], item["success"]) for item in results] == [
        (alice_id, True), (bob_id, True), (9999, False)
    ]
    assert results[2]["error"] == "User does not exist"

    async with session_factory() as session:
        assert (await session.get(User, alice_id)).points == 25
        assert (await session.get(User, bob_id)).points == 25
    records = await all_records(session_factory)
    assert {(r.source, r.related_type) for r in records} == {("admin_grant", "batch_grant")}

    async with transaction(session_factory) as session:
        with pytest.raises(ValidationError):
            await PointsService.batch_grant_points(session, [], 5)
        with pytest.raises(ValidationError):
            await PointsService.batch_grant_points(session, [bob_id], 0)
