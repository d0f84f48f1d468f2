"""SQL-backed transactional store."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any, TypeVar

import anyio

from natrix.errors import NatrixError, StorageError
from natrix.store.base import ABSENT, BufferedTransaction, conflict
from natrix.store.config import StoreConfig
from natrix.store.dialect import Dialect, DialectQueries

T = TypeVar("T")


def prefix_upper_bound(prefix: str) -> str:
    """Smallest string greater than every string starting with ``prefix``."""
    if not prefix:
        return "\U0010ffff"
    return prefix[:-1] + chr(ord(prefix[-1]) + 1)


class SQLStore:
    """Store that keeps keys and values in a single SQL table.

    All operations share one connection and are serialized on a lock, so
    a read never observes another transaction's uncommitted writes.
    """

    def __init__(
        self,
        connection: Any,
        dialect: Dialect,
        config: StoreConfig | None = None,
    ) -> None:
        """Initialize the SQL store.

        Args:
            connection: Async database connection.
                For SQLite: aiosqlite.Connection
                For Postgres: asyncpg.Connection
            dialect: SQL dialect for query generation.
            config: Store configuration.
        """
        self._connection = connection
        self._dialect = dialect
        self._config = config or StoreConfig()
        self._queries: DialectQueries = dialect.queries_for_table(
            self._config.table_name
        )
        self._lock = anyio.Lock()
        self._table_created = False
        self._closed = False

    def begin(self) -> SQLTransaction:
        if self._closed:
            msg = "Store is closed"
            raise StorageError(msg)
        return SQLTransaction(self)

    async def _ensure_table(self) -> None:
        """Create table if auto_create_tables is enabled."""
        if not self._config.auto_create_tables or self._table_created:
            return
        await self._execute(self._queries.create_table)
        await self._commit_if_needed()
        self._table_created = True

    async def _execute(self, query: str, params: Sequence[Any] = ()) -> Any:
        """Execute a query, handling driver differences."""
        conn = self._connection
        if self._dialect.driver == "aiosqlite":
            # aiosqlite style: execute(sql, params)
            return await conn.execute(query, params)
        # asyncpg style: execute(sql, *args)
        return await conn.execute(query, *params)

    async def _fetch_all(self, query: str, params: Sequence[Any] = ()) -> list[Any]:
        """Fetch all rows from a query."""
        conn = self._connection
        if self._dialect.driver == "aiosqlite":
            cursor = await conn.execute(query, params)
            return list(await cursor.fetchall())
        return list(await conn.fetch(query, *params))

    async def _fetch_one(self, query: str, params: Sequence[Any] = ()) -> Any:
        rows = await self._fetch_all(query, params)
        return rows[0] if rows else None

    async def _commit_if_needed(self) -> None:
        """Commit if using a connection that requires explicit commits."""
        if self._dialect.driver == "aiosqlite":
            await self._connection.commit()

    async def _begin(self) -> None:
        await self._execute(self._queries.begin)

    async def _commit(self) -> None:
        if self._dialect.driver == "aiosqlite":
            await self._connection.commit()
        else:
            await self._execute("COMMIT")

    async def _rollback(self) -> None:
        if self._dialect.driver == "aiosqlite":
            await self._connection.rollback()
        else:
            await self._execute("ROLLBACK")

    async def _run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` under the connection lock and timeout."""
        if self._closed:
            msg = "Store is closed"
            raise StorageError(msg)
        try:
            with anyio.fail_after(self._config.operation_timeout):
                async with self._lock:
                    await self._ensure_table()
                    return await operation()
        except NatrixError:
            raise
        except TimeoutError as e:
            msg = "Store operation timed out"
            raise StorageError(msg) from e
        except Exception as e:
            msg = f"Store operation failed: {e}"
            raise StorageError(msg) from e

    async def close(self) -> None:
        """Close the store. The connection is owned by the caller."""
        self._closed = True

    async def __aenter__(self) -> SQLStore:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()


class SQLTransaction(BufferedTransaction):
    """Transaction against a SQLStore."""

    def __init__(self, store: SQLStore) -> None:
        super().__init__()
        self._store = store

    async def _load(self, key: str) -> tuple[int, bytes | None]:
        store = self._store

        async def load() -> tuple[int, bytes | None]:
            row = await store._fetch_one(store._queries.select_value, (key,))
            if row is None:
                return ABSENT, None
            value = row[1]
            return int(row[0]), bytes(value) if value is not None else None

        return await store._run(load)

    async def _load_prefix(self, prefix: str) -> list[tuple[str, int, bytes]]:
        store = self._store

        async def load() -> list[tuple[str, int, bytes]]:
            rows = await store._fetch_all(
                store._queries.select_range,
                (prefix, prefix_upper_bound(prefix)),
            )
            return [(row[0], int(row[1]), bytes(row[2])) for row in rows]

        return await store._run(load)

    async def _apply(
        self,
        reads: Mapping[str, int],
        writes: Mapping[str, bytes | None],
    ) -> None:
        store = self._store
        queries = store._queries

        async def apply() -> None:
            await store._begin()
            try:
                for key, expected in reads.items():
                    row = await store._fetch_one(queries.select_version, (key,))
                    actual = int(row[0]) if row is not None else ABSENT
                    if actual != expected:
                        raise conflict(key, expected, actual)
                for key, value in writes.items():
                    if value is None:
                        await store._execute(queries.tombstone, (key,))
                    else:
                        await store._execute(queries.upsert, (key, value))
                await store._commit()
            except BaseException:
                with anyio.CancelScope(shield=True):
                    await store._rollback()
                raise

        await store._run(apply)
