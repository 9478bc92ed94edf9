"""Async SQLAlchemy engine and session management.

The API opens one session per request through :func:`get_session`; arq jobs
call :func:`get_session_factory` and open their own sessions per job.
"""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

_NOT_READY = "Database not initialized. Call init_db() first."


def _engine_options(url: str) -> dict[str, Any]:
    options: dict[str, Any] = {"pool_pre_ping": True, "echo": False}
    if url.startswith("postgresql"):
        # asyncpg prepared statements break behind pgbouncer
        options.update(pool_size=20, max_overflow=10, connect_args={"statement_cache_size": 0})
    return options


async def init_db(url: str) -> None:
    """Create the engine and session factory for ``url``."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = create_async_engine(url, **_engine_options(url))
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)


async def close_db() -> None:
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError(_NOT_READY)
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped session (FastAPI dependency)."""
    async with get_session_factory()() as session:
        yield session
