import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from models.user import User
from routers import rate_limit
from services.providers import reset_provider_cache
from services.session_token import create_session_token


TEST_USER_ID = "ledger-user"
TEST_USER_EMAIL = "ledger@example.com"


@pytest.fixture
def user_id() -> str:
    return TEST_USER_ID


@pytest.fixture
def auth_headers() -> dict:
    return {"Authorization": f"Bearer {create_session_token(TEST_USER_ID, TEST_USER_EMAIL)['token']}"}


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit and provider state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    rate_limit._last_heartbeat_at.clear()
    reset_provider_cache()
    yield
    rate_limit._local_counters.clear()
    rate_limit._last_heartbeat_at.clear()
    reset_provider_cache()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "payless.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with maker() as session:
        session.add(User(id=TEST_USER_ID, email=TEST_USER_EMAIL))
        await session.commit()

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def api_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
