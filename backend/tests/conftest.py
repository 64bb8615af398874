"""Pytest configuration and fixtures."""

from datetime import datetime
from decimal import Decimal

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from gains_sandbox.main import app
from gains_sandbox.models import Base, Trade
from gains_sandbox.services.job_queue import InMemoryJobQueue
from gains_sandbox.services.notifications import InMemoryNotificationBus
from gains_sandbox.services.runtime import SandboxRuntime


@pytest.fixture(scope="function")
async def test_engine(tmp_path):
    """Fresh file-backed SQLite database per test (shared by concurrent sessions)."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine):
    """Async session factory bound to the test database."""
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def runtime(session_maker):
    """Pipeline wired with in-memory queue and bus; workers not started."""
    runtime = SandboxRuntime(
        session_maker,
        InMemoryJobQueue(),
        InMemoryNotificationBus(),
        concurrency=2,
        poll_interval=0.05,
        sweep_interval=0.1,
    )
    await runtime.open(start_workers=False)
    yield runtime
    await runtime.close()


@pytest.fixture(scope="function")
async def client(runtime):
    """Create test client against the test runtime."""
    app.state.sandbox = runtime

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def add_trades(session_maker):
    """Insert ledger trades: await add_trades(("b1", "1", "30000", "5", datetime(...)), ...)."""

    async def _add(*rows, user_id: str = "user1", asset: str = "BTC"):
        async with session_maker() as session:
            for trade_id, quantity, price, fee, executed_at in rows:
                session.add(Trade(
                    id=trade_id,
                    user_id=user_id,
                    asset=asset,
                    quantity=Decimal(quantity),
                    price_usd=Decimal(price),
                    fee_usd=Decimal(fee),
                    executed_at=executed_at,
                ))
            await session.commit()

    return _add


@pytest.fixture
async def sample_ledger(add_trades):
    """One buy and one sell: the 2024 BTC round trip."""
    await add_trades(
        ("b1", "1", "30000", "5", datetime(2024, 1, 1)),
        ("s1", "-1", "40000", "2", datetime(2024, 6, 1)),
    )
