"""Shared pytest fixtures.

Unit tests run against ``AsyncMock`` sessions and Redis clients. API tests marked
with the ``client`` fixture need live PostgreSQL and Redis at the configured URLs
and are skipped when either is unreachable.
"""

import datetime
import logging
import socket
from collections.abc import AsyncGenerator
from functools import lru_cache
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import urlsplit

import pytest
import pytest_asyncio
import redis.asyncio as redis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.click_recorder import ClickRecorder
from app.config import Settings, get_settings
from app.database import Base, get_db
from app.dependencies import get_service_manager
from app.main import app, rate_limiter
from app.models import ShortCode
from app.schemas import IPLocation

settings = get_settings()

# NullPool keeps asyncpg connections from leaking between per-test event loops.
test_engine = create_async_engine(settings.DATABASE_URL, echo=False, poolclass=NullPool)

test_session = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

TEST_LOCATION = IPLocation(country="Testland", region="Test Region", city="Test City")


async def fake_locate(ip: str) -> IPLocation:
    return TEST_LOCATION.model_copy()


def _reachable(host: str, port: int) -> bool:
    try:
        with socket.create_connection((host, port), timeout=1):
            return True
    except OSError:
        return False


@lru_cache()
def backends_available() -> bool:
    db_url = make_url(settings.DATABASE_URL)
    redis_url = urlsplit(settings.REDIS_URL)
    return _reachable(db_url.host or "localhost", db_url.port or 5432) and _reachable(
        redis_url.hostname or "localhost", redis_url.port or 6379
    )


# ============================================================================
# MOCKED BACKENDS
# ============================================================================


@pytest.fixture
def test_settings() -> Settings:
    return get_settings()


@pytest.fixture
def mock_database() -> AsyncMock:
    db = AsyncMock(spec=AsyncSession)
    db.execute = AsyncMock()
    db.scalar = AsyncMock()
    db.add = MagicMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.refresh = AsyncMock()
    return db


@pytest.fixture
def mock_redis() -> AsyncMock:
    redis_client = AsyncMock(spec=redis.Redis)
    redis_client.get = AsyncMock(return_value=None)
    redis_client.setex = AsyncMock(return_value=True)
    redis_client.delete = AsyncMock(return_value=1)
    redis_client.ping = AsyncMock(return_value=True)
    return redis_client


@pytest.fixture
def mock_logger() -> MagicMock:
    return MagicMock()


@pytest.fixture
def sample_short_code() -> ShortCode:
    created = datetime.datetime(2025, 10, 15, 12, 0, tzinfo=datetime.timezone.utc)
    return ShortCode(
        id=1,
        code="abc123",
        original_url="https://example.com/a",
        click_count=0,
        created_at=created,
        updated_at=created,
        expires_at=None,
        last_accessed_at=None,
    )


# ============================================================================
# LIVE BACKENDS
# ============================================================================


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    if not backends_available():
        pytest.skip("PostgreSQL or Redis is not reachable")

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    async with test_session() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture(scope="function")
async def redis_client(db_session: AsyncSession) -> AsyncGenerator[redis.Redis, None]:
    client = redis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
    )
    await client.flushdb()
    yield client
    await client.flushdb()
    await client.aclose()


@pytest_asyncio.fixture(scope="function")
async def click_recorder(redis_client: redis.Redis) -> AsyncGenerator[ClickRecorder, None]:
    recorder = ClickRecorder(test_session, redis_client, locator=fake_locate, settings=settings)
    yield recorder
    await recorder.shutdown(timeout=settings.CLICK_RECORD_TIMEOUT_SECONDS)


@pytest_asyncio.fixture(scope="function")
async def client(
    redis_client: redis.Redis,
    click_recorder: ClickRecorder,
    monkeypatch: pytest.MonkeyPatch,
) -> AsyncGenerator[AsyncClient, None]:
    manager = SimpleNamespace(
        settings=settings,
        logger=logging.getLogger("shortcode"),
        cache=redis_client,
        click_recorder=click_recorder,
    )

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with test_session() as session:
            yield session

    async def override_get_service_manager() -> SimpleNamespace:
        return manager

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_service_manager] = override_get_service_manager
    monkeypatch.setattr(rate_limiter, "allow", lambda client: True)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
