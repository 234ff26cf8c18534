"""
Test configuration and fixtures.
Uses a per-test SQLite database (aiosqlite) and local storage in tmp_path.
"""
import os

# Set test environment before any imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./filedrop_test.db"
os.environ["REDIS_URL"] = "redis://localhost:6379/0"
os.environ["ENVIRONMENT"] = "test"
os.environ["API_KEY_BCRYPT_ROUNDS"] = "4"

import pytest
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, List, Tuple

import httpx
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from filedrop.config import Settings
from filedrop.database import create_engine, create_session_factory
from filedrop.models.base import Base
from filedrop.services import Services, build_services
from filedrop.services.delivery_scheduler import DeliveryScheduler
from filedrop.storage import LocalStorageBackend

OWNER_ID = "owner-test"
OTHER_OWNER_ID = "owner-other"


class RecordingScheduler(DeliveryScheduler):
    """Records scheduled attempts instead of running them."""

    def __init__(self):
        self.scheduled: List[Tuple[str, float]] = []

    def schedule(self, delivery_id: str, delay: float = 0) -> None:
        self.scheduled.append((delivery_id, delay))

    def delays_for(self, delivery_id: str) -> List[float]:
        return [d for i, d in self.scheduled if i == delivery_id]


class BrokenScheduler(DeliveryScheduler):
    """Scheduler whose broker is down."""

    def schedule(self, delivery_id: str, delay: float = 0) -> None:
        raise ConnectionError("broker down")


class FakeClock:
    """Settable clock for token expiry tests."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class WebhookReceiver:
    """httpx.MockTransport handler answering with a scripted status."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, text="ok" if self.status_code < 300 else "boom")


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        storage_backend="local",
        local_storage_dir=str(tmp_path / "uploads"),
        local_public_base_url="http://files.test/uploads",
        max_upload_size=10 * 1024 * 1024,
        webhook_max_attempts=3,
        webhook_backoff_base=2,
        api_key_bcrypt_rounds=4,
        api_key_default_rate_limit=1000,
    )


@pytest.fixture
async def session_factory(test_settings: Settings) -> AsyncGenerator[async_sessionmaker, None]:
    """Session factory over a fresh SQLite file database."""
    engine = create_engine(test_settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield create_session_factory(engine)

    await engine.dispose()


@pytest.fixture
async def db_session(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def receiver() -> WebhookReceiver:
    return WebhookReceiver()


@pytest.fixture
def storage(test_settings: Settings) -> LocalStorageBackend:
    return LocalStorageBackend(
        base_dir=test_settings.local_storage_dir,
        base_url=test_settings.local_public_base_url,
    )


@pytest.fixture
async def services(
    test_settings: Settings,
    session_factory: async_sessionmaker,
    storage: LocalStorageBackend,
    scheduler: RecordingScheduler,
    receiver: WebhookReceiver,
) -> AsyncGenerator[Services, None]:
    """All services wired against the test database, storage and receiver."""
    built = build_services(
        test_settings,
        session_factory,
        storage=storage,
        scheduler=scheduler,
        transport=httpx.MockTransport(receiver),
    )

    yield built

    await built.webhooks.aclose()


@pytest.fixture
async def api_key(services: Services, db_session: AsyncSession):
    """Unrestricted API key for OWNER_ID: (ApiKey, plain key)."""
    return await services.api_keys.create_api_key(db_session, owner_id=OWNER_ID, name="Test key")


def get_test_app(services: Services, session_factory: async_sessionmaker) -> FastAPI:
    """Create a test FastAPI app with injected services and test database."""
    from filedrop.main import app
    from filedrop.database import get_db

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.state.services = services
    app.dependency_overrides[get_db] = override_get_db

    return app


@pytest.fixture
async def client(services: Services, session_factory: async_sessionmaker, api_key) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client authenticated with an unrestricted API key."""
    app = get_test_app(services, session_factory)

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-API-Key": api_key[1]},
    ) as ac:
        yield ac

    # Clean up overrides
    app.dependency_overrides.clear()
    app.state.services = None


@pytest.fixture
async def anonymous_client(services: Services, session_factory: async_sessionmaker) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client without credentials."""
    app = get_test_app(services, session_factory)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.services = None
