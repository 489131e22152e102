"""Shared test fixtures: single test DB for all test modules."""
from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from config.settings import settings
from src.auth import create_access_token
from src.db.tables import Base, MovieRow, SubscriptionPlanRow, UserRow
from src.db.engine import get_session
import src.db.payment_tables  # noqa: F401
import src.db.security_tables  # noqa: F401

# Use a shared in-memory DB with check_same_thread=False and StaticPool
# This ensures all connections see the same in-memory database.
from sqlalchemy.pool import NullPool, StaticPool

TEST_DB_URL = "sqlite+aiosqlite:///file:test?mode=memory&cache=shared&uri=true"

test_engine = create_async_engine(
    TEST_DB_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)


async def override_get_session():
    async with TestSession() as session:
        yield session


# Import app and override BEFORE any test module imports app
from src.api.main import app, build_payment_service  # noqa: E402

app.dependency_overrides[get_session] = override_get_session

# Patch the engine module so anything opening its own session uses the test DB
import src.db.engine as _engine_mod
_engine_mod.async_session = TestSession
_engine_mod.engine = test_engine


ADMIN_KEY = "test-admin-key"

USER_ID = "user-1"
OTHER_USER_ID = "user-2"
TRUSTED_USER_ID = "user-trusted"
PLAN_ID = "plan-monthly"
PLAN_PRICE = 4.99
PAID_MOVIE_ID = "movie-paid"
FREE_MOVIE_ID = "movie-free"
NO_SOURCE_MOVIE_ID = "movie-no-source"
PAID_MOVIE_URL = "https://vimeo.com/76979871"


async def seed_fixtures(session: AsyncSession) -> None:
    """Users, the monthly plan, and three movies (paid, free, paid without a source)."""
    session.add_all([
        UserRow(id=USER_ID, email="viewer@example.com", display_name="Viewer"),
        UserRow(id=OTHER_USER_ID, email="other@example.com", display_name="Other"),
        UserRow(id=TRUSTED_USER_ID, email="trusted@example.com", display_name="Trusted", trusted_user=True),
        SubscriptionPlanRow(
            id=PLAN_ID, name="monthly", display_name="Monthly", price=PLAN_PRICE,
            currency="USD", duration_days=30,
        ),
        MovieRow(
            id=PAID_MOVIE_ID, title="The River Between Us", price=1.00,
            video_embed_url=PAID_MOVIE_URL,
        ),
        MovieRow(
            id=FREE_MOVIE_ID, title="Angkor at Dawn", is_free=True, price=0.0,
            video_embed_url="https://www.youtube.com/watch?v=aqz-KE-bpKQ",
        ),
        MovieRow(id=NO_SOURCE_MOVIE_ID, title="Coming Soon", price=2.00),
    ])
    await session.commit()


from contextlib import asynccontextmanager

@asynccontextmanager
async def get_test_session():
    """Context manager for seeding data in tests."""
    async with TestSession() as session:
        yield session


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create tables before each test, drop after. Seeds users, plan, and movies."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSession() as session:
        await seed_fixtures(session)

    # Fresh mock provider per test; tests may swap in a KHQR-backed service
    app.state.payment_service = build_payment_service()

    yield

    # Reset rate limiter between tests
    from src.middleware.rate_limit import reset_store
    reset_store()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def session():
    async with TestSession() as s:
        yield s


@pytest_asyncio.fixture
async def file_sessions(tmp_path):
    """Session factory over an on-disk SQLite DB: one real connection per session.

    The shared in-memory engine funnels every session through one connection,
    which cannot model concurrent writers.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'reelvault.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    async with factory() as s:
        await seed_fixtures(s)
    yield factory
    await engine.dispose()


def auth_headers(user_id: str = USER_ID) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture
def auth():
    """Callable building a bearer header for a seeded user."""
    return auth_headers


@pytest.fixture
def admin_headers(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY)
    return {"X-Admin-Key": ADMIN_KEY}
