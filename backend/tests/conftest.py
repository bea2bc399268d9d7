"""
Test configuration and fixtures
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine

from app.core.config import Settings
from app.db.database import build_session_factory
from app.db.models import Base
from app.main import create_app
from app.services.freshness import encode_freshness_token
from app.services.login_registry import LoginRegistry
from app.services.session_registry import SessionRegistry
from app.services.token_codec import EmbeddedTokenCodec
from app.utils.clock import to_epoch_ms

TEST_SECRET = "test-secret-key-for-testing-only"

class FakeClock:
    """Clock that only moves when told to"""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

def fresh_ts(clock) -> str:
    """ts token stamped at the clock's current time"""
    return encode_freshness_token(to_epoch_ms(clock()))

def auth_headers(clock, auth_token: str, session_token: str, user_id: str = None) -> dict:
    headers = {
        "Authorization": f"Bearer {auth_token}",
        "X-Session-Token": session_token,
        "ts": fresh_ts(clock),
    }
    if user_id is not None:
        headers["x-user-id"] = user_id
    return headers

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a throwaway SQLite database"""
    return Settings(
        environment="test",
        user_token_secret=TEST_SECRET,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        log_level="WARNING"
    )

@pytest_asyncio.fixture
async def engine(settings):
    """Create test database engine with all tables"""
    engine = create_async_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()

@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)

@pytest_asyncio.fixture
async def db_session(session_factory):
    """Create database session for testing"""
    async with session_factory() as session:
        yield session

@pytest.fixture
def codec():
    return EmbeddedTokenCodec(TEST_SECRET)

@pytest.fixture
def login_registry(codec, clock):
    return LoginRegistry(codec, clock)

@pytest.fixture
def session_registry(clock):
    # No background manager: last_access is touched inline
    return SessionRegistry(clock=clock)

@pytest_asyncio.fixture
async def test_app(settings, session_factory, clock):
    """Create test application wired to the test database and clock"""
    app = create_app(settings=settings, session_factory=session_factory, clock=clock)

    yield app

    await app.state.background_tasks.drain()

@pytest_asyncio.fixture
async def client(test_app):
    """Create test client"""
    async with AsyncClient(transport=ASGITransport(app=test_app), base_url="http://test") as client:
        yield client
