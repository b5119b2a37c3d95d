from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from shared.database import OrderStatus, User, UserRole, transaction
from shared.validation import ValidationError
from cms_api.services.errors import InvalidStatusTransitionError, OrderNotFoundError, UserNotFoundError, VipLevelNotFoundError
from cms_api.services.vip_service import VipService


async def roles_of(session_factory, user_id):
    async with session_factory() as session:
        result = await session.execute(select(UserRole.role).where(UserRole.user_id == user_id))
        return result.scalars().all()


@pytest.mark.asyncio
async def test_level_crud_and_soft_delete(session_factory, vip_levels) -> None:
    async with transaction(session_factory) as session:
        created = await VipService.create_level(
            session, 3, "elite", display_name="Elite", price=Decimal("90"), benefits=["priority"]
        )
        assert created.duration_days == 30

        with pytest.raises(ValidationError):
            await VipService.create_level(session, 3, "duplicate")

        updated = await VipService.update_level(session, 3, {"price": Decimal("120"), "is_active": False})
        assert Decimal(updated.price) == Decimal("120")

        await VipService.delete_level(session, 3)

    async with transaction(session_factory) as session:
        active = await VipService.get_all_levels(session)
        everything = await VipService.get_all_levels(session, include_inactive=True)
        assert await VipService.get_level(session, 3) is None
        assert (await VipService.get_level(session, 3, active_only=False)).is_active is False

        with pytest.raises(VipLevelNotFoundError):
            await VipService.update_level(session, 42, {"name": "ghost"})

    assert [level.level for level in active] == [1, 2]
    assert [level.level for level in everything] == [1, 2, 3]


@pytest.mark.asyncio
async def test_set_extend_cancel_cycle(session_factory, users) -> None:
    bob_id = users["bob"].id

    async with transaction(session_factory) as session:
        user = await VipService.set_user_vip(session, bob_id, 1, 10)
        first_expiry = user.vip_expire_at
        assert user.is_vip is True

    async with transaction(session_factory) as session:
        user = await VipService.extend_user_vip(session, bob_id, 5)
        assert user.vip_expire_at == first_expiry + timedelta(days=5)

    assert await roles_of(session_factory, bob_id) == ["vip"]

    async with transaction(session_factory) as session:
        user = await VipService.cancel_user_vip(session, bob_id)
        assert (user.is_vip, user.vip_level, user.vip_expire_at) == (False, 0, None)

    assert await roles_of(session_factory, bob_id) == []


@pytest.mark.asyncio
async def test_extend_after_expiry_counts_from_now(session_factory, users) -> None:
    bob_id = users["bob"].id
    async with transaction(session_factory) as session:
        user = await session.get(User, bob_id)
        user.is_vip = True
        user.vip_level = 1
        user.vip_expire_at = datetime.now() - timedelta(days=3)

    async with transaction(session_factory) as session:
        user = await VipService.extend_user_vip(session, bob_id, 7)

    expected = datetime.now() + timedelta(days=7)
    assert abs((user.vip_expire_at - expected).total_seconds()) < 60


@pytest.mark.asyncio
async def test_permanent_membership_stays_permanent(session_factory, users) -> None:
    bob_id = users["bob"].id
    async with transaction(session_factory) as session:
        await VipService.set_user_vip(session, bob_id, 1, 0)

    async with transaction(session_factory) as session:
        user = await VipService.extend_user_vip(session, bob_id, 30)

    assert user.vip_expire_at is None
    assert user.is_vip is True


@pytest.mark.asyncio
async def test_extend_zero_days_makes_permanent(session_factory, users) -> None:
    bob_id = users["bob"].id
    async with transaction(session_factory) as session:
        await VipService.set_user_vip(session, bob_id, 1, 30)
        user = await VipService.extend_user_vip(session, bob_id, 0)

    assert user.vip_expire_at is None


@pytest.mark.asyncio
async def test_invalid_vip_arguments(session_factory, users) -> None:
    async with transaction(session_factory) as session:
        with pytest.raises(ValidationError):
            await VipService.set_user_vip(session, users["bob"].id, 0, 30)
        with pytest.raises(ValidationError):
            await VipService.extend_user_vip(session, users["bob"].id, 30)
        with pytest.raises(ValidationError):
            await VipService.extend_user_vip(session, users["bob"].id, -1)
        with pytest.raises(UserNotFoundError):
            await VipService.set_user_vip(session, 9999, 1, 30)


@pytest.mark.asyncio
async def test_update_expired_vip(session_factory, users) -> None:
    async with transaction(session_factory) as session:
        await VipService.set_user_vip(session, users["alice"].id, 1, 30)
        await VipService.set_user_vip(session, users["bob"].id, 2, 30)
        bob = await session.get(User, users["bob"].id)
        bob.vip_expire_at = datetime.now() - timedelta(minutes=1)

    async with transaction(session_factory) as session:
        expired = await VipService.update_expired_vip(session)

    assert [item["id"] for item in expired] == [users["bob"].id]
    async with session_factory() as session:
        bob = await session.get(User, users["bob"].id)
        alice = await session.get(User, users["alice"].id)
    assert (bob.is_vip, bob.vip_level) == (False, 0)
    assert alice.is_vip is True
    assert await roles_of(session_factory, users["bob"].id) == []


@pytest.mark.asyncio
async def test_order_transitions(session_factory, users) -> None:
    bob_id = users["bob"].id
    async with transaction(session_factory) as session:
        order = await VipService.create_order(
            session, bob_id, 1, Decimal("10.005"), 30, "manual", "MANUAL_1"
        )
        assert order.status == OrderStatus.PENDING
        assert Decimal(order.price) == Decimal("10.01")

        paid = await VipService.update_order_status(session, order.id, "paid")
        assert paid.status == OrderStatus.PAID

        with pytest.raises(InvalidStatusTransitionError):
            await VipService.update_order_status(session, order.id, "pending")
        with pytest.raises(InvalidStatusTransitionError):
            await VipService.update_order_status(session, order.id, "cancelled")

        refunded = await VipService.update_order_status(session, order.id, OrderStatus.REFUNDED)
        assert refunded.status == OrderStatus.REFUNDED

        with pytest.raises(OrderNotFoundError):
            await VipService.update_order_status(session, 999, "paid")
        with pytest.raises(OrderNotFoundError):
            await VipService.get_order_by_id(session, order.id, user_id=users["alice"].id)

        orders, total = await VipService.get_user_orders(session, bob_id)
        assert total == 1 and orders[0].id == order.id
        card_orders, card_total = await VipService.get_card_key_orders(session, bob_id)
        assert (card_orders, card_total) == ([], 0)
