import sys
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from knockbites_loyalty.app import create_app
from knockbites_loyalty.db.base import Base
from knockbites_loyalty.db.session import get_session, get_session_factory
from knockbites_loyalty.models.loyalty import LoyaltyAccount, LoyaltyProgram, LoyaltyTier
from knockbites_loyalty.observability.loyalty import get_loyalty_store
from knockbites_loyalty.observability.orders import get_order_tracking_store


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()


@pytest.fixture(autouse=True)
def reset_observability():
    get_loyalty_store().reset()
    get_order_tracking_store().reset()
    yield
    get_loyalty_store().reset()
    get_order_tracking_store().reset()


def enable_sqlite_savepoints(engine, *, begin: str = "BEGIN") -> None:
    """Let SQLAlchemy own transaction boundaries so SAVEPOINT works on sqlite."""

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql(begin)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """File-backed database where every session holds its own connection.

    ``BEGIN IMMEDIATE`` makes sqlite queue concurrent writers the way row
    locks do on PostgreSQL.
    """

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'loyalty.db'}", future=True)
    enable_sqlite_savepoints(engine, begin="BEGIN IMMEDIATE")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@dataclass
class SeededProgram:
    program_id: UUID
    store_id: int
    tier_ids: dict[str, UUID]


@pytest_asyncio.fixture
async def loyalty_program(session_factory) -> SeededProgram:
    """Store 1 program earning 1 point per dollar with Bronze/Silver/Gold tiers."""

    async with session_factory() as session:
        program = LoyaltyProgram(store_id=1, name="KnockBites Rewards", points_per_dollar=Decimal("1"))
        session.add(program)
        await session.flush()
        tiers = [
            LoyaltyTier(program_id=program.id, name="Bronze", min_points=0, sort_order=1),
            LoyaltyTier(program_id=program.id, name="Silver", min_points=500, sort_order=2),
            LoyaltyTier(program_id=program.id, name="Gold", min_points=1000, sort_order=3),
        ]
        session.add_all(tiers)
        await session.commit()
        return SeededProgram(
            program_id=program.id,
            store_id=program.store_id,
            tier_ids={tier.name: tier.id for tier in tiers},
        )


@pytest.fixture
def make_account(session_factory, loyalty_program):
    """Create an empty account in the seeded program, starting at Bronze."""

    async def _make(*, customer_id: UUID | None = None, is_active: bool = True) -> UUID:
        async with session_factory() as session:
            account = LoyaltyAccount(
                customer_id=customer_id or uuid4(),
                program_id=loyalty_program.program_id,
                current_tier_id=loyalty_program.tier_ids["Bronze"],
                referral_code=uuid4().hex[:8].upper(),
                is_active=is_active,
            )
            session.add(account)
            await session.commit()
            return account.id

    return _make
