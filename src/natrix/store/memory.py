"""In-memory transactional store."""

from __future__ import annotations

from collections.abc import Mapping

import anyio

from natrix.errors import StorageError
from natrix.store.base import ABSENT, BufferedTransaction, conflict
from natrix.store.config import StoreConfig


class InMemoryStore:
    """Process-local store with optimistic transactions.

    Every key carries the number of the commit that last wrote it. Deletes
    leave a tombstone version behind so a delete-then-recreate between a
    read and a commit is still detected.
    """

    def __init__(self, config: StoreConfig | None = None) -> None:
        self._config = config or StoreConfig()
        self._values: dict[str, bytes] = {}
        self._versions: dict[str, int] = {}
        self._commit_counter = 0
        self._commit_lock = anyio.Lock()
        self._closed = False

    def begin(self) -> InMemoryTransaction:
        if self._closed:
            msg = "Store is closed"
            raise StorageError(msg)
        return InMemoryTransaction(self)

    def snapshot(self) -> dict[str, bytes]:
        """Copy of all committed values, for inspection in tests."""
        return dict(self._values)

    async def close(self) -> None:
        self._closed = True

    async def __aenter__(self) -> InMemoryStore:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()


class InMemoryTransaction(BufferedTransaction):
    """Transaction against an InMemoryStore."""

    def __init__(self, store: InMemoryStore) -> None:
        super().__init__()
        self._store = store

    async def _load(self, key: str) -> tuple[int, bytes | None]:
        return (
            self._store._versions.get(key, ABSENT),
            self._store._values.get(key),
        )

    async def _load_prefix(self, prefix: str) -> list[tuple[str, int, bytes]]:
        return [
            (key, self._store._versions[key], value)
            for key, value in self._store._values.items()
            if key.startswith(prefix)
        ]

    async def _apply(
        self,
        reads: Mapping[str, int],
        writes: Mapping[str, bytes | None],
    ) -> None:
        store = self._store
        if store._closed:
            msg = "Store is closed"
            raise StorageError(msg)
        try:
            with anyio.fail_after(store._config.operation_timeout):
                await store._commit_lock.acquire()
        except TimeoutError as e:
            msg = "Timed out waiting to commit"
            raise StorageError(msg) from e
        try:
            # No awaits below: validation and application are atomic.
            for key, expected in reads.items():
                actual = store._versions.get(key, ABSENT)
                if actual != expected:
                    raise conflict(key, expected, actual)

            store._commit_counter += 1
            for key, value in writes.items():
                store._versions[key] = store._commit_counter
                if value is None:
                    store._values.pop(key, None)
                else:
                    store._values[key] = value
        finally:
            store._commit_lock.release()
