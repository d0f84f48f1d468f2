"""Dispatcher that moves outbox rows onto the event bus."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol

import anyio

from natrix.domain.events import DomainEvent
from natrix.errors import DeliveryError, StorageError
from natrix.outbox.outbox import archive_key, outbox_key, pending_events
from natrix.retry import RetryPolicy, retry_async
from natrix.store.base import Store

logger = logging.getLogger("natrix.outbox")


class EventPublisher(Protocol):
    """What the dispatcher needs from a bus."""

    async def publish(
        self,
        event: DomainEvent,
        *,
        on_settled: Callable[[], Awaitable[None]] | None = None,
    ) -> None: ...


@dataclass
class DispatcherConfig:
    """Configuration for OutboxDispatcher."""

    poll_interval: float = 1.0
    """Seconds between scans when nobody calls notify()."""

    batch_size: int = 100
    """Maximum rows published per pass."""

    archive_dispatched: bool = False
    """Copy settled rows to archive/ instead of only deleting them."""

    flush_timeout: float = 5.0
    """Seconds close() waits for in-flight events to settle."""

    retire_retry: RetryPolicy = field(default_factory=RetryPolicy)
    """Backoff for retiring a settled row when the store fails."""

    failure_backoff: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(delay=0.1, max_delay=5.0)
    )
    """Backoff between passes while the bus or store is failing."""


class OutboxDispatcher:
    """Publishes pending outbox rows and retires them once settled.

    A row stays in the outbox until every subscription acked (or
    dead-lettered) its event. On startup every remaining row is published
    again, so a crash between publish and retire causes a duplicate, never
    a loss.
    """

    def __init__(
        self,
        store: Store,
        bus: EventPublisher,
        config: DispatcherConfig | None = None,
    ) -> None:
        self._store = store
        self._bus = bus
        self._config = config or DispatcherConfig()
        self._in_flight: set[str] = set()
        self._wakeup = anyio.Event()
        self._running = False
        self._closed = False
        self._stopped = anyio.Event()

    @property
    def in_flight(self) -> int:
        """Events published but not yet settled."""
        return len(self._in_flight)

    def notify(self) -> None:
        """Wake the dispatch loop, typically right after a commit."""
        self._wakeup.set()

    async def dispatch_pending(self) -> int:
        """Publish pending rows that are not already in flight.

        Returns:
            Number of events handed to the bus.

        Raises:
            DeliveryError: The bus refused an event. Rows after it are left
                for the next pass so per-aggregate order is kept.
        """
        async with self._store.begin() as txn:
            events = await pending_events(txn)

        published = 0
        for event in events:
            if published >= self._config.batch_size:
                break
            key = outbox_key(event)
            if key in self._in_flight:
                continue

            self._in_flight.add(key)
            try:
                await self._bus.publish(event, on_settled=self._retirer(event))
            except BaseException:
                self._in_flight.discard(key)
                raise
            published += 1

        if published:
            logger.debug("Dispatched %d events", published)
        return published

    def _retirer(self, event: DomainEvent) -> Callable[[], Awaitable[None]]:
        key = outbox_key(event)

        async def retire() -> None:
            async with self._store.begin() as txn:
                await txn.delete(key)
                if self._config.archive_dispatched:
                    await txn.put(archive_key(event), event.model_dump_json().encode())

        async def on_settled() -> None:
            try:
                await retry_async(
                    retire, self._config.retire_retry, retry_on=(StorageError,)
                )
            except StorageError:
                logger.exception(
                    "Could not retire outbox row %s; it will be dispatched again", key
                )
            finally:
                self._in_flight.discard(key)

        return on_settled

    async def run(self) -> None:
        """Dispatch until closed, on notify() or every poll interval."""
        if self._running:
            msg = "OutboxDispatcher is already running"
            raise RuntimeError(msg)

        self._running = True
        failures = 0
        try:
            # The pass after close() is the last one; it picks up rows
            # committed right before shutdown.
            while True:
                try:
                    published = await self.dispatch_pending()
                except (DeliveryError, StorageError) as e:
                    if self._closed:
                        logger.warning("Final dispatch failed: %s", e)
                        break
                    failures += 1
                    wait = self._config.failure_backoff.delay_for(failures)
                    logger.warning("Dispatch failed (%s), retrying in %.2fs", e, wait)
                    await anyio.sleep(wait)
                    continue

                failures = 0
                if self._closed:
                    break
                if published >= self._config.batch_size:
                    continue
                with anyio.move_on_after(self._config.poll_interval):
                    await self._wakeup.wait()
                self._wakeup = anyio.Event()
        finally:
            self._running = False
            self._stopped.set()

    async def close(self) -> None:
        """Stop dispatching and wait for in-flight events to settle."""
        if self._closed:
            return
        self._closed = True
        self._wakeup.set()

        if self._running:
            await self._stopped.wait()

        with anyio.move_on_after(self._config.flush_timeout):
            while self._in_flight:
                await anyio.sleep(0.01)
        if self._in_flight:
            logger.warning(
                "Closed with %d unsettled events; they stay in the outbox",
                len(self._in_flight),
            )
