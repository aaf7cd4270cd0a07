import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from models.account import Account
from services.rate_limiter import LocalCounterStore, RateLimiter, set_rate_limiter


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    store = LocalCounterStore()
    set_rate_limiter(RateLimiter(store))
    yield
    store.clear()
    set_rate_limiter(None)
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "voice_studio.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")

    # Concurrent writers queue on BEGIN IMMEDIATE instead of failing lock upgrades.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


async def create_account(session_maker, account_id, remaining, plan="free", total=None, used=0):
    """Insert an account with an explicit balance, bypassing the signup grant."""
    async with session_maker() as session:
        account = Account(
            id=account_id,
            email=f"{account_id}@example.com",
            plan=plan,
            total_credits=total if total is not None else remaining + used,
            used_credits=used,
            remaining_credits=remaining,
            version=1,
        )
        session.add(account)
        await session.commit()
        return account


@pytest.fixture
def make_account(session_maker):
    async def _make(account_id, remaining, plan="free", total=None, used=0):
        return await create_account(session_maker, account_id, remaining, plan=plan, total=total, used=used)

    return _make
