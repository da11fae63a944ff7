"""Pytest configuration and fixtures for backend tests.

Services run against the in-memory store and a fake clock so time-based
behavior (windows, TTLs, idle timeouts) is driven explicitly by tests.
SQL store tests use an in-memory SQLite database through aiosqlite.
"""

import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing sessionguard modules
os.environ["SESSIONGUARD_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SESSIONGUARD_JWT_SECRET_KEY"] = "test-jwt-secret-key-0123456789abcdef"
os.environ["SESSIONGUARD_RATE_LIMIT_SIGNING_KEY"] = "test-rate-limit-signing-key"
os.environ["SESSIONGUARD_ENABLE_METRICS"] = "false"

from sessionguard import models  # noqa: E402, F401
from sessionguard.container import SecurityComponents, build_security_components  # noqa: E402
from sessionguard.core.config import Settings  # noqa: E402
from sessionguard.core.database import Base  # noqa: E402
from sessionguard.core.exceptions import StoreUnavailableError  # noqa: E402
from sessionguard.domain.entities import UserRole  # noqa: E402
from sessionguard.repositories import InMemorySecurityStore, SqlAlchemySecurityStore  # noqa: E402
from sessionguard.services.event_sink import SecurityEventSink  # noqa: E402
from sessionguard.services.identity import JWTIdentityProvider  # noqa: E402
from sessionguard.services.rate_limiter import RateLimiter, RateLimiterConfig  # noqa: E402
from sessionguard.services.token_guard import TokenGuard  # noqa: E402

TEST_JWT_SECRET = "test-jwt-secret-key-0123456789abcdef"
TEST_SIGNING_KEY = "test-rate-limit-signing-key"
START_TIME = datetime(2026, 1, 5, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START_TIME):
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(
        self,
        seconds: float = 0,
        minutes: float = 0,
        hours: float = 0,
        days: float = 0,
        milliseconds: float = 0,
    ) -> datetime:
        self._now += timedelta(
            seconds=seconds, minutes=minutes, hours=hours, days=days, milliseconds=milliseconds
        )
        return self._now


class FailingStore(InMemorySecurityStore):
    """In-memory store whose selected operations raise StoreUnavailableError."""

    def __init__(self) -> None:
        super().__init__()
        self.failing: set[str] = set()

    def fail(self, *operations: str) -> None:
        self.failing.update(operations)

    def recover(self) -> None:
        self.failing.clear()

    def _check(self, operation: str) -> None:
        if operation in self.failing:
            raise StoreUnavailableError(operation, ConnectionError("connection refused"))

    async def add_event(self, event):
        self._check("add_event")
        return await super().add_event(event)

    async def get_blacklist_entry(self, token_digest):
        self._check("get_blacklist_entry")
        return await super().get_blacklist_entry(token_digest)

    async def get_session(self, session_id):
        self._check("get_session")
        return await super().get_session(session_id)

    async def update_session(self, session_id, mutate):
        self._check("update_session")
        return await super().update_session(session_id, mutate)

    async def add_audit_entry(self, entry):
        self._check("add_audit_entry")
        return await super().add_audit_entry(entry)

    async def get_audit_entry(self, log_id):
        self._check("get_audit_entry")
        return await super().get_audit_entry(log_id)

    async def list_audit_entries(self, *args, **kwargs):
        self._check("list_audit_entries")
        return await super().list_audit_entries(*args, **kwargs)

    async def update_rate_limit_entry(self, key, mutate):
        self._check("update_rate_limit_entry")
        return await super().update_rate_limit_entry(key, mutate)

    async def get_user_role(self, user_id):
        self._check("get_user_role")
        return await super().get_user_role(user_id)



@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemorySecurityStore:
    return InMemorySecurityStore()


@pytest.fixture
def failing_store() -> FailingStore:
    return FailingStore()


@pytest.fixture
def event_sink(store, clock) -> SecurityEventSink:
    return SecurityEventSink(store, clock)


@pytest.fixture
def identity(clock) -> JWTIdentityProvider:
    return JWTIdentityProvider(TEST_JWT_SECRET, clock)


@pytest.fixture
def token_guard(store, event_sink, identity, clock) -> TokenGuard:
    return TokenGuard(store, event_sink, identity, clock)


@pytest.fixture
def rate_limiter(store, event_sink, clock) -> RateLimiter:
    """Limiter with adaptive promotion effectively disabled.

    Tests that exercise the burst detector build their own limiter.
    """
    return RateLimiter(
        store,
        event_sink,
        clock,
        signing_key=TEST_SIGNING_KEY,
        config=RateLimiterConfig(burst_threshold=10_000),
    )


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        jwt_secret_key=TEST_JWT_SECRET,
        rate_limit_signing_key=TEST_SIGNING_KEY,
        rate_limit_burst_threshold=10_000,
        enable_metrics=False,
        alert_webhook_url="",
    )


@pytest.fixture
def components(test_settings, store, clock) -> SecurityComponents:
    """Fully wired engine over the in-memory store and fake clock."""
    return build_security_components(test_settings, store=store, clock=clock)


@pytest_asyncio.fixture
async def admin_role(store) -> UserRole:
    role = UserRole(user_id="admin-1", role="admin")
    await store.set_user_role(role)
    return role


async def events_of(sink: SecurityEventSink, event_type: str) -> list:
    """Recorded events of one type, newest first."""
    return await sink.list_events(event_type=event_type, limit=1000)


# --- SQL store ---


@pytest_asyncio.fixture
async def sql_session_maker() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh in-memory SQLite schema per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def sql_store(sql_session_maker) -> SqlAlchemySecurityStore:
    return SqlAlchemySecurityStore(sql_session_maker)


# --- HTTP ---


@pytest_asyncio.fixture
async def app(components):
    from sessionguard.main import create_app

    return create_app(security=components)


@pytest_asyncio.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client over ASGITransport (lifespan is not run)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
