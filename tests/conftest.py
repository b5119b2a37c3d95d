import os
import sys
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

# Окружение до импорта shared.config
_TMP_DIR = tempfile.mkdtemp(prefix="alcms-tests-")
os.environ.setdefault("DATA_DIR", _TMP_DIR)
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TMP_DIR}/default.db")
os.environ.setdefault("ADMIN_USERNAME", "admin")
os.environ.setdefault("ADMIN_PASSWORD", "secret")

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from shared.context import ServiceContext  # noqa: E402
from shared.database import Base, User, VipLevel, create_engine, transaction  # noqa: E402
from cms_api.services.referral_service import ReferralService  # noqa: E402

ADMIN_AUTH = ("admin", "secret")


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def referral_service():
    return ReferralService(enabled=True, first_rate=0.10, renewal_rate=0.05)


@pytest.fixture
def ctx(session_factory, referral_service):
    return ServiceContext(session_factory=session_factory, commission_processor=referral_service)


@pytest_asyncio.fixture
async def users(session_factory):
    """alice приглашена inviter, bob без пригласившего"""
    async with transaction(session_factory) as session:
        inviter = User(username="inviter")
        session.add(inviter)
        await session.flush()

        alice = User(username="alice", inviter_id=inviter.id)
        bob = User(username="bob")
        session.add_all([alice, bob])
        await session.flush()

        return {"inviter": inviter, "alice": alice, "bob": bob}


@pytest_asyncio.fixture
async def vip_levels(session_factory):
    async with transaction(session_factory) as session:
        levels = [
            VipLevel(level=1, name="basic", display_name="Basic", price=30, duration_days=30),
            VipLevel(level=2, name="pro", display_name="Pro", price=60, duration_days=30),
        ]
        session.add_all(levels)
        return levels


@pytest_asyncio.fixture
async def app(ctx):
    from cms_api.main import create_app
    from cms_api.middleware.rate_limit import redeem_rate_limit

    application = create_app(ctx)

    async def no_rate_limit():
        return True

    application.dependency_overrides[redeem_rate_limit] = no_rate_limit

    try:
        yield application
    finally:
        application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app):
    from httpx import ASGITransport, AsyncClient

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client


@pytest.fixture
def failing_processor():
    processor = AsyncMock()
    processor.process_commission.side_effect = RuntimeError("referral service unavailable")
    return processor
