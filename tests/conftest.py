"""
Shared Test Fixtures
====================

Environment defaults, the entitlement test doubles wired as fixtures, and
an HTTP client bound to the ASGI app.
"""

import os
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("REVENUECAT_API_KEY", "test_rc_api_key")
os.environ.setdefault("REVENUECAT_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("JWT_SECRET", "test-secret-key-that-is-at-least-32-characters")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.services.receipt_verifier import EntitlementVerifier, RetryPolicy

from tests.fakes import NOW, FakeBackend, FakeRedis, ManualClock, valid


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend(valid(NOW + timedelta(days=30)))


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def verifier(backend, clock, sleeps) -> EntitlementVerifier:
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    return EntitlementVerifier(
        backend,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=1.0, factor=4.0),
        clock=clock,
        timeout=1.0,
        sleep=fake_sleep,
    )


@pytest.fixture(autouse=True)
def fake_redis():
    """Keep cache calls in memory."""
    redis = FakeRedis()
    with patch("app.services.cache.get_redis", AsyncMock(return_value=redis)):
        yield redis


@pytest.fixture
def db_session() -> MagicMock:
    db = MagicMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.flush = AsyncMock()
    return db


@pytest_asyncio.fixture
async def client(db_session):
    """HTTP client bound to the app, with the database dependency stubbed."""
    from app.db.session import get_db
    from app.main import app

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def session_backends() -> dict[str, FakeBackend]:
    """In-memory backends of the sessions opened through the API, by user."""
    return {}


@pytest_asyncio.fixture
async def session_manager(client, clock, session_backends):
    """Entitlement session manager over in-memory backends, wired into the app."""
    from app.main import app
    from app.services.entitlement_sessions import EntitlementSessionManager, get_session_manager

    def backend_factory(user_id: str) -> FakeBackend:
        backend = session_backends.setdefault(user_id, FakeBackend(valid(NOW + timedelta(days=30))))
        return backend

    manager = EntitlementSessionManager(backend_factory, clock=clock)
    app.dependency_overrides[get_session_manager] = lambda: manager
    yield manager
    await manager.close_all()
