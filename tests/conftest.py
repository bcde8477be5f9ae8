"""
Global pytest fixtures for the ChainSync billing test suite.

Provides:
- Async database session on a temporary SQLite file
- A frozen, advanceable clock
- FastAPI app wired to an in-memory replay guard and the test session
- Organization / subscription factories
"""
import os
from datetime import timedelta
from typing import Any, AsyncGenerator
from uuid import uuid4

import pytest
import pytest_asyncio

# Set test environment BEFORE any chainsync imports
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_paystack_secret"
os.environ["FLUTTERWAVE_SECRET_KEY"] = "FLWSECK_TEST-flutterwave-secret"
os.environ["WEBHOOK_IDEMPOTENCY_BACKEND"] = "memory"
os.environ["WEBHOOK_ALLOWED_SKEW_SECONDS"] = "300"
os.environ["WEBHOOK_REPLAY_TTL_SECONDS"] = "600"
os.environ["REDIS_URL"] = "memory://"

from tests.utils import FrozenClock  # noqa: E402


# ============================================================================
# Clock
# ============================================================================

@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


# ============================================================================
# Async Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def async_engine():
    """Create async SQLite engine for testing using a temporary file."""
    from sqlalchemy.ext.asyncio import create_async_engine

    db_file = f"test_{uuid4().hex}.sqlite"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_file}", echo=False)

    from chainsync.shared.db.base import Base
    import chainsync.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()

    if os.path.exists(db_file):
        os.remove(db_file)


@pytest_asyncio.fixture
async def session_factory(async_engine):
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator:
    """Provide an async session over freshly created tables."""
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest_asyncio.fixture
async def db(db_session):
    """Alias for db_session to match integration tests."""
    return db_session


# ============================================================================
# Factories
# ============================================================================

@pytest.fixture
def make_subscription(db, clock):
    """Create an organization plus its subscription."""
    from chainsync.models import Organization, Subscription

    async def _make(
        org_id: str = "org-test",
        status: str = "trial",
        *,
        is_active: bool = True,
        **fields: Any,
    ):
        org = Organization(id=org_id, name=f"Org {org_id}", is_active=is_active)
        values: dict[str, Any] = {
            "org_id": org_id,
            "provider": "paystack",
            "plan_code": "BASIC",
            "tier": "basic",
            "monthly_currency": "NGN",
            "status": status,
            "trial_start_date": clock() - timedelta(days=14),
            "trial_end_date": clock() + timedelta(days=1),
        }
        values.update(fields)
        subscription = Subscription(**values)
        db.add(org)
        db.add(subscription)
        await db.commit()
        return org, subscription

    return _make


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================

@pytest.fixture
def replay_store(clock):
    from chainsync.modules.billing.domain.billing.replay_guard import InMemoryIdempotencyStore

    return InMemoryIdempotencyStore(clock=clock)


@pytest.fixture
def app(clock, replay_store):
    """Real app with an in-memory replay guard and the frozen clock."""
    from chainsync.main import app as chainsync_app
    from chainsync.modules.billing.domain.billing.replay_guard import ReplayGuard

    previous_guard = chainsync_app.state.replay_guard
    chainsync_app.state.replay_guard = ReplayGuard(replay_store, ttl=timedelta(minutes=10))
    chainsync_app.state.clock = clock
    yield chainsync_app
    chainsync_app.state.replay_guard = previous_guard
    del chainsync_app.state.clock


@pytest_asyncio.fixture
async def async_client(app, db) -> AsyncGenerator:
    """Async test client for FastAPI. Overrides get_db to share the test session."""
    from httpx import ASGITransport, AsyncClient
    from chainsync.shared.db.session import get_db

    async def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.pop(get_db, None)


@pytest_asyncio.fixture
async def ac(async_client):
    """Alias for async_client to match integration tests."""
    return async_client
