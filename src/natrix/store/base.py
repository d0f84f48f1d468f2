"""Transactional key-value contract used by both sides of the system.

The command and query stores are black boxes behind this contract. A store
hands out optimistic transactions: reads are recorded with the version they
observed, writes are buffered, and ``commit`` applies the writes only if no
observed key changed in the meantime.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Protocol, runtime_checkable

from natrix.errors import ConflictError, StorageError

# Version reported for a key that has never been written.
ABSENT = 0


@runtime_checkable
class Transaction(Protocol):
    """A unit of work against a store."""

    async def get(self, key: str) -> bytes | None:
        """Return the value for ``key`` or None."""
        ...

    async def put(self, key: str, value: bytes) -> None:
        """Write ``value`` under ``key``."""
        ...

    async def delete(self, key: str) -> None:
        """Remove ``key``. Deleting a missing key is a no-op."""
        ...

    async def scan(self, prefix: str) -> list[tuple[str, bytes]]:
        """Return ``(key, value)`` pairs under ``prefix``, ordered by key."""
        ...

    async def commit(self) -> None:
        """Apply buffered writes atomically."""
        ...

    async def rollback(self) -> None:
        """Discard buffered writes."""
        ...

    async def __aenter__(self) -> Transaction: ...

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None: ...


@runtime_checkable
class Store(Protocol):
    """Factory for transactions."""

    def begin(self) -> Transaction:
        """Begin a new transaction."""
        ...

    async def close(self) -> None:
        """Release resources held by the store."""
        ...


class BufferedTransaction(ABC):
    """Optimistic transaction with read-your-writes buffering.

    Subclasses load committed state and apply validated write sets; this
    class tracks what was read and what is pending.

    Usage:
        async with store.begin() as txn:
            value = await txn.get("counter")
            await txn.put("counter", b"2")
        # committed on clean exit, rolled back on any exception
    """

    def __init__(self) -> None:
        self._reads: dict[str, int] = {}
        self._writes: dict[str, bytes | None] = {}
        self._done = False

    @abstractmethod
    async def _load(self, key: str) -> tuple[int, bytes | None]:
        """Return ``(version, value)`` of the committed key."""

    @abstractmethod
    async def _load_prefix(self, prefix: str) -> list[tuple[str, int, bytes]]:
        """Return committed ``(key, version, value)`` rows under ``prefix``."""

    @abstractmethod
    async def _apply(
        self,
        reads: Mapping[str, int],
        writes: Mapping[str, bytes | None],
    ) -> None:
        """Validate ``reads`` and apply ``writes`` atomically.

        Raises ConflictError if any read key's version changed.
        """

    def _check_active(self) -> None:
        if self._done:
            msg = "Transaction is already finished"
            raise StorageError(msg)

    def _observe(self, key: str, version: int) -> None:
        # The first observation wins; later reads must not mask a conflict.
        self._reads.setdefault(key, version)

    async def get(self, key: str) -> bytes | None:
        self._check_active()
        if key in self._writes:
            return self._writes[key]
        version, value = await self._load(key)
        self._observe(key, version)
        return value

    async def put(self, key: str, value: bytes) -> None:
        self._check_active()
        self._writes[key] = value

    async def delete(self, key: str) -> None:
        self._check_active()
        self._writes[key] = None

    async def scan(self, prefix: str) -> list[tuple[str, bytes]]:
        self._check_active()
        merged: dict[str, bytes] = {}
        for key, version, value in await self._load_prefix(prefix):
            self._observe(key, version)
            merged[key] = value
        for key, value in self._writes.items():
            if not key.startswith(prefix):
                continue
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = value
        return sorted(merged.items())

    async def commit(self) -> None:
        self._check_active()
        self._done = True
        if not self._writes:
            return
        await self._apply(self._reads, self._writes)

    async def rollback(self) -> None:
        self._done = True
        self._writes.clear()

    async def __aenter__(self) -> BufferedTransaction:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        if self._done:
            return
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()


def conflict(key: str, expected: int, actual: int) -> ConflictError:
    """Build the error raised when a read key changed before commit."""
    return ConflictError(
        f"key {key!r} changed during transaction",
        expected=expected,
        actual=actual,
    )
