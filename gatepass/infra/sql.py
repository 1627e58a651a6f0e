from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Callable, Optional, Tuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
)

Gated = Callable[[], AsyncContextManager[None]]

SQLITE_GATE_LIMIT = 10

_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)


def normalize_async_url(url: str) -> str:
    """Plain sqlite/postgres URLs get their async driver."""
    for prefix, async_prefix in _DRIVERS:
        if url.startswith(prefix):
            return async_prefix + url[len(prefix):]
    return url


def make_gate(limit: int) -> Gated:
    """At most `limit` store calls hold a connection at once; the rest
    wait on the semaphore rather than in the pool checkout."""
    sem = asyncio.Semaphore(max(1, limit))

    @asynccontextmanager
    async def gated() -> AsyncIterator[None]:
        async with sem:
            yield

    return gated


def _sqlite_pragmas(dbapi_connection, _):
    cur = dbapi_connection.cursor()
    cur.execute("PRAGMA journal_mode=WAL;")
    cur.execute("PRAGMA busy_timeout=5000;")
    cur.execute("PRAGMA synchronous=NORMAL;")
    cur.close()


def make_async_engine(
    database_url: str, *,
    pool_size: int = 10,
    max_overflow: int = 10,
    pool_timeout: float = 30.0,
    gate_limit: Optional[int] = None,
) -> Tuple[AsyncEngine, async_sessionmaker[AsyncSession], Gated]:
    url = normalize_async_url(database_url)
    is_sqlite = url.startswith("sqlite+aiosqlite://")

    kw = dict(pool_pre_ping=True)
    if not is_sqlite:
        kw.update(pool_size=pool_size, max_overflow=max_overflow,
                  pool_timeout=pool_timeout)
    engine = create_async_engine(url, **kw)
    if is_sqlite:
        event.listen(engine.sync_engine, "connect", _sqlite_pragmas)

    SessionAsync = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False,
    )

    if gate_limit is None:
        gate_limit = SQLITE_GATE_LIMIT if is_sqlite else pool_size
    return engine, SessionAsync, make_gate(gate_limit)
