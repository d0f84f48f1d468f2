"""Application wiring: stores, bus, outbox dispatcher and projection."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import anyio
from anyio.abc import TaskGroup

from natrix.bus.config import BusConfig
from natrix.bus.dead_letter import DeadLetterQueue
from natrix.bus.event_bus import EventBus
from natrix.bus.middleware import recoverer, timeout
from natrix.bus.types import Middleware
from natrix.handlers.command import CommandHandler
from natrix.handlers.query import QueryHandler
from natrix.marshaler import PydanticMarshaler
from natrix.outbox.dispatcher import DispatcherConfig, OutboxDispatcher
from natrix.projection.engine import ProjectionConfig, ProjectionEngine
from natrix.retry import RetryPolicy
from natrix.store.base import Store
from natrix.store.config import StoreConfig
from natrix.store.memory import InMemoryStore

logger = logging.getLogger("natrix.app")

WAIT_POLL_INTERVAL = 0.01


@dataclass
class NatrixConfig:
    """Configuration for a Natrix application."""

    store: StoreConfig = field(default_factory=StoreConfig)
    """Used by stores the application creates itself (see Natrix.in_memory)."""

    bus: BusConfig = field(default_factory=BusConfig)
    """Event bus partitions, buffers and redelivery."""

    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    """Outbox polling, batching and flush on close."""

    projection: ProjectionConfig = field(default_factory=ProjectionConfig)
    """Projection subscription and apply timeout."""

    command_retry: RetryPolicy = field(default_factory=RetryPolicy)
    """Backoff for transient storage failures on the command side."""


class Natrix:
    """Command store and query store kept in sync through the outbox.

    Example:
        async with Natrix(command_store, query_store) as app:
            result = await app.commands.submit(CreateOrder(...))
            await app.wait_for_projection(result.aggregate_id, result.version)
            view = await app.queries.get(result.aggregate_id)
    """

    def __init__(
        self,
        command_store: Store,
        query_store: Store,
        config: NatrixConfig | None = None,
        *,
        middlewares: Sequence[Middleware] = (),
        event_metadata: Callable[[], dict[str, str]] | None = None,
    ) -> None:
        """Wire the components.

        Args:
            command_store: Holds aggregates, the id counter and the outbox.
            query_store: Holds views, checkpoints and dead letters.
            config: Application configuration.
            middlewares: Bus middlewares applied around the projection,
                outermost first (e.g. natrix.otel.tracing()).
            event_metadata: Metadata stamped on every new event
                (e.g. natrix.otel.trace_headers).
        """
        self._config = config or NatrixConfig()
        self._command_store = command_store
        self._query_store = query_store
        marshaler = PydanticMarshaler()

        self.dead_letters = DeadLetterQueue(query_store)
        self.bus = EventBus(
            self._config.bus, marshaler=marshaler, dead_letters=self.dead_letters
        )
        for middleware in middlewares:
            self.bus.add_middleware(middleware)

        self.dispatcher = OutboxDispatcher(
            command_store, self.bus, self._config.dispatcher
        )
        self.projection = ProjectionEngine(
            query_store, self._config.projection, marshaler=marshaler
        )
        projection_config = self._config.projection
        self.bus.subscribe(
            self.projection.handle,
            name=projection_config.subscription_name,
            workers=projection_config.workers,
            middlewares=[
                recoverer(logging.getLogger("natrix.projection")),
                timeout(projection_config.apply_timeout),
            ],
        )

        self.commands = CommandHandler(
            command_store,
            retry_policy=self._config.command_retry,
            on_commit=self.dispatcher.notify,
            event_metadata=event_metadata,
        )
        self.queries = QueryHandler(query_store)

        self._task_group: TaskGroup | None = None
        self._closed = anyio.Event()

    @classmethod
    def in_memory(cls, config: NatrixConfig | None = None, **kwargs) -> Natrix:
        """Application backed by two fresh in-memory stores."""
        config = config or NatrixConfig()
        return cls(
            InMemoryStore(config.store), InMemoryStore(config.store), config, **kwargs
        )

    @property
    def config(self) -> NatrixConfig:
        return self._config

    async def wait_for_projection(
        self, aggregate_id: int, version: int, timeout: float = 5.0
    ) -> None:
        """Wait until the projection checkpoint reaches ``version``.

        Raises:
            TimeoutError: The checkpoint did not get there in time.
        """
        with anyio.fail_after(timeout):
            while True:
                checkpoint = await self.projection.checkpoint(aggregate_id)
                if checkpoint.sequence_number >= version:
                    return
                await anyio.sleep(WAIT_POLL_INTERVAL)

    async def close(self) -> None:
        """Flush the outbox dispatcher, then stop the bus."""
        if self._closed.is_set():
            return
        logger.info("Shutting down")
        try:
            await self.dispatcher.close()
            await self.bus.close()
        finally:
            self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def __aenter__(self) -> Natrix:
        if self._task_group is not None:
            msg = "Natrix is already running"
            raise RuntimeError(msg)
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        self._task_group.start_soon(self.bus.run)
        self._task_group.start_soon(self.dispatcher.run)
        logger.info("Started")
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> bool | None:
        task_group = self._task_group
        if task_group is None:
            msg = "Natrix is not running"
            raise RuntimeError(msg)
        self._task_group = None
        with anyio.CancelScope(shield=True):
            await self.close()
        return await task_group.__aexit__(exc_type, exc_val, exc_tb)
