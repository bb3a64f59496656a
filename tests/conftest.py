"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database engine and session factory (async SQLite in memory)
- Settings and the FastAPI app built around the test engine
- Controllable clocks and a recording sleep for time-dependent components
"""
import hashlib
import hmac
import json
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

import app.db.models  # noqa: F401  registers every table on Base.metadata
from app.core.config import Settings
from app.db.database import Base, SessionFactory, create_session_factory


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

WEBHOOK_SECRET = "test-ringover-secret"
ADMIN_API_KEY = "test-admin-api-key"


@pytest.fixture(scope="function")
async def async_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create async test database engine with every table"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def bare_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Engine on an empty database: no tables at all"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> SessionFactory:
    return create_session_factory(async_engine)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DEBUG=True,
        DATABASE_URL=TEST_DATABASE_URL,
        RINGOVER_WEBHOOK_SECRET=WEBHOOK_SECRET,
        ADMIN_API_KEY=ADMIN_API_KEY,
        RINGOVER_API_KEY="ringover-key",
        OPENAI_API_KEY="openai-key",
        PIPEDRIVE_API_TOKEN="pipedrive-token",
        RECORDINGS_DIR=str(tmp_path / "recordings"),
    )


@pytest.fixture
def app(settings: Settings, async_engine: AsyncEngine):
    from app.main import create_app

    return create_app(settings, engine=async_engine)


@pytest.fixture(scope="function")
async def test_client(app) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client driving the app in-process"""
    # unhandled errors come back as the 500 produced by generic_exception_handler
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-API-Key": ADMIN_API_KEY}


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def signed_request(payload: dict[str, Any]) -> tuple[bytes, dict[str, str]]:
    """JSON body plus the headers Ringover would send with it"""
    body = json.dumps(payload).encode("utf-8")
    return body, {"Content-Type": "application/json", "X-Ringover-Signature": sign(body)}


# ============================================================================
# Time control
# ============================================================================

class FakeClock:
    """Epoch-seconds clock that only moves when told to"""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDateTimeClock:
    """Naive-UTC datetime clock that only moves when told to"""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 15, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSleep:
    """Async sleep replacement that records the requested delays"""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def datetime_clock() -> FakeDateTimeClock:
    return FakeDateTimeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
