"""Shared test fixtures for natrix."""

from collections.abc import AsyncGenerator

import aiosqlite
import pytest

from natrix.bus import BusConfig
from natrix.retry import RetryPolicy
from natrix.store import InMemoryStore, SQLiteDialect, SQLStore, Store, StoreConfig


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Retry policy with millisecond delays."""
    return RetryPolicy(max_attempts=3, delay=0.001, max_delay=0.01, jitter=0)


@pytest.fixture
def bus_config() -> BusConfig:
    """Bus configuration with fast redelivery for tests."""
    return BusConfig(
        workers=2,
        buffer_size=10,
        publish_timeout=1.0,
        redelivery=RetryPolicy(max_attempts=3, delay=0.001, max_delay=0.01, jitter=0),
        close_timeout_s=1.0,
    )


@pytest.fixture
async def sqlite_connection():
    """Create an in-memory SQLite connection for testing."""
    conn = await aiosqlite.connect(":memory:")
    try:
        yield conn
    finally:
        await conn.close()


@pytest.fixture
async def sqlite_store(sqlite_connection) -> AsyncGenerator[SQLStore, None]:
    async with SQLStore(
        sqlite_connection, SQLiteDialect(), StoreConfig(operation_timeout=2.0)
    ) as store:
        yield store


@pytest.fixture(params=["memory", "sqlite"])
async def store(request, sqlite_connection) -> AsyncGenerator[Store, None]:
    """Every store implementation, for behavior shared by all of them."""
    if request.param == "memory":
        async with InMemoryStore() as memory_store:
            yield memory_store
    else:
        async with SQLStore(sqlite_connection, SQLiteDialect()) as sql_store:
            yield sql_store
