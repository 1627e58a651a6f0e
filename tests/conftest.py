import os

import fakeredis
import pytest
import pytest_asyncio
from redis.asyncio import Redis

from gatepass.infra.sql import make_async_engine
from gatepass.model.ticketstore import create_schema, new_store
from gatepass.tokens import TokenCodec
from tests.helpers import SECRET

REDIS_URL = os.getenv("REDIS_URL")


@pytest.fixture
def codec():
    return TokenCodec(SECRET)


@pytest_asyncio.fixture(scope="function")
async def sql_db(tmp_path):
    engine, SessionAsync, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'tickets.db'}"
    )
    async with engine.begin() as conn:
        await create_schema(conn)
    try:
        yield SessionAsync, gated
    finally:
        await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def store(sql_db):
    SessionAsync, gated = sql_db
    async with SessionAsync() as session:
        yield new_store("sql", db=session, gated=gated)


@pytest.fixture
def open_store(sql_db):
    """Store factory for concurrent callers: one session per caller."""
    SessionAsync, gated = sql_db

    async def run(fn):
        async with SessionAsync() as session:
            return await fn(new_store("sql", db=session, gated=gated))
    return run


@pytest_asyncio.fixture(scope="function")
async def redis_client():
    """Real Redis when REDIS_URL is set, otherwise an in-process fake."""
    if REDIS_URL:
        r = Redis.from_url(REDIS_URL, decode_responses=True)
    else:
        r = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(),
                                     decode_responses=True)
    try:
        yield r
    finally:
        await r.aclose()


@pytest.fixture(params=["sql", "redis"])
def backend(request, open_store, redis_client):
    """Like open_store, for either store backend."""
    if request.param == "sql":
        return open_store

    async def run(fn):
        return await fn(new_store("redis", r=redis_client))
    return run
