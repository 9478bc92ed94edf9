"""Shared test fixtures.

Service and API tests run against an in-memory SQLite database built
from the ORM metadata; Redis and the arq pool are replaced with mocks.
"""

from __future__ import annotations

import itertools
from collections.abc import AsyncGenerator
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from lexrewards.config import get_settings
from lexrewards.database import get_session
from lexrewards.db.base import Base
from lexrewards.db.models import User
from lexrewards.dependencies import get_notifier
from lexrewards.notifications.schemas import NotificationRequest
from lexrewards.timeutils import utcnow


class RecordingNotifier:
    """Notifier that keeps every emitted request in memory."""

    def __init__(self) -> None:
        self.requests: list[NotificationRequest] = []

    async def emit(self, request: NotificationRequest) -> bool:
        self.requests.append(request)
        return True

    def subtypes(self) -> list[str]:
        return [r.subtype for r in self.requests]

    def of(self, subtype: str) -> list[NotificationRequest]:
        return [r for r in self.requests if r.subtype == subtype]


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch):
    """Default settings for every test; tests may setenv then cache_clear."""
    monkeypatch.setenv("LXR_TIMEZONE", "UTC")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def engine(request) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Let SQLAlchemy own BEGIN so SAVEPOINTs behave as on PostgreSQL
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None
        if request.node.get_closest_marker("foreign_keys"):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def make_user(db: AsyncSession):
    """Factory creating committed users with unique emails."""
    counter = itertools.count(1)

    async def _make(
        email: str | None = None,
        display_name: str | None = None,
        show_on_leaderboard: bool = True,
        lifetime_spend: Decimal | int = 0,
    ) -> User:
        n = next(counter)
        user = User(
            email=email or f"member{n}@example.com",
            display_name=display_name or f"Member {n}",
            show_on_leaderboard=show_on_leaderboard,
            lifetime_spend=Decimal(lifetime_spend),
            created_at=utcnow(),
        )
        db.add(user)
        await db.commit()
        return user

    return _make


@pytest_asyncio.fixture
async def client(session_factory, notifier: RecordingNotifier) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with the test database and notifier wired in."""
    from lexrewards.main import create_app

    app = create_app()

    async def _session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_notifier] = lambda: notifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
