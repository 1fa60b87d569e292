"""
Shared test fixtures: an in-memory SQLite database, a Redis double, seeded users
and the app wired to both.
"""

from decimal import Decimal
from typing import Dict, Optional
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from xnrt_ledger.app import create_app
from xnrt_ledger.core.dependencies import get_deposit_verifier, get_redis_client
from xnrt_ledger.core.service.auth.jwt_service import JWTService
from xnrt_ledger.core.service.chain.deposit_verifier import DepositVerifier
from xnrt_ledger.core.service.chain.models import VerifyResult
from xnrt_ledger.core.service.ledger.models import BalancePool
from xnrt_ledger.core.service.user.user_service import UserService
from xnrt_ledger.infra.config.settings import settings
from xnrt_ledger.infra.database import get_async_session
from xnrt_ledger.infra.models import Base
from xnrt_ledger.infra.repository.balance_repository import BalanceRepository

HOUSE_CODE = settings.HOUSE_ACCOUNT_REFERRAL_CODE


class InMemoryRedis:
    """Covers the subset of redis.asyncio.Redis the services call"""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, Optional[int]] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self.data[key] = value
        self.ttls[key] = ttl
        return True

    async def set(self, key: str, value: str, nx: bool = False, ex: Optional[int] = None) -> Optional[bool]:
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                self.ttls.pop(key, None)
                removed += 1
        return removed


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def redis_client():
    return InMemoryRedis()


@pytest.fixture
async def house(session):
    return await UserService(session).ensure_house_account(HOUSE_CODE)


@pytest.fixture
async def make_user(session, house):
    """Factory registering a user, optionally under a referrer, with an opening main balance"""

    async def _make_user(referrer=None, main_balance: Decimal = Decimal(0), is_admin: bool = False):
        service = UserService(session)
        user = await service.register(
            referrer_code=referrer.referral_code if referrer else None,
            is_admin=is_admin
        )
        if main_balance:
            await BalanceRepository(session).credit(user.id, BalancePool.MAIN, main_balance)
            await session.commit()
        return user

    return _make_user


@pytest.fixture
def balance_of(session):
    """Fresh balance row for a user"""

    async def _balance_of(user_id):
        return await BalanceRepository(session).get(user_id)

    return _balance_of


@pytest.fixture
def verifier():
    verifier = AsyncMock(spec=DepositVerifier)
    verifier.verify.return_value = VerifyResult(verified=False, reason="Transaction not found")
    return verifier


@pytest.fixture
def app(session_factory, redis_client, verifier):
    app = create_app()

    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_session] = override_session
    app.dependency_overrides[get_redis_client] = lambda: redis_client
    app.dependency_overrides[get_deposit_verifier] = lambda: verifier
    return app


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def auth_headers():
    """Bearer header for a registered user"""

    def _auth_headers(user):
        token = JWTService().create_access_token(user.id, is_admin=user.is_admin)
        return {"Authorization": f"Bearer {token.access_token}"}

    return _auth_headers
