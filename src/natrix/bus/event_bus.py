"""EventBus - partitioned, at-least-once delivery of domain events."""

from __future__ import annotations

import logging
import zlib
from collections.abc import Awaitable, Callable, Sequence

import anyio
from anyio.abc import TaskGroup
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from natrix.bus.config import BusConfig
from natrix.bus.dead_letter import DeadLetterQueue
from natrix.bus.message import Message
from natrix.bus.types import HandlerFunc, Middleware
from natrix.domain.events import DomainEvent
from natrix.errors import DeliveryError, PermanentError
from natrix.marshaler import Marshaler, PydanticMarshaler

SettleFunc = Callable[[], Awaitable[None]]

logger = logging.getLogger("natrix.bus")


def partition_for(aggregate_id: int, partitions: int) -> int:
    """Stable partition index for an aggregate."""
    return zlib.crc32(str(aggregate_id).encode()) % partitions


class _Settlement:
    """Calls ``on_settled`` once every subscription copy has been acked."""

    def __init__(self, copies: int, on_settled: SettleFunc | None) -> None:
        self._remaining = copies
        self._on_settled = on_settled

    async def settle(self) -> None:
        self._remaining -= 1
        if self._remaining == 0 and self._on_settled is not None:
            await self._on_settled()


class Subscription:
    """One subscriber's view of the bus.

    Messages are routed to ``workers`` partitions by aggregate id. Each
    partition is drained by a single task, so events of one aggregate are
    handled one at a time and in publish order.
    """

    def __init__(
        self,
        name: str,
        handler: HandlerFunc,
        workers: int,
        config: BusConfig,
        dead_letters: DeadLetterQueue | None,
    ) -> None:
        if workers < 1:
            msg = "Subscription needs at least one worker"
            raise ValueError(msg)
        self.name = name
        self.workers = workers
        self._handler = handler
        self._config = config
        self._dead_letters = dead_letters
        self._send_streams: list[MemoryObjectSendStream[Message]] = []
        self._receive_streams: list[MemoryObjectReceiveStream[Message]] = []
        for _ in range(workers):
            send, receive = anyio.create_memory_object_stream[Message](
                max_buffer_size=config.buffer_size
            )
            self._send_streams.append(send)
            self._receive_streams.append(receive)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def backlog(self) -> int:
        """Messages buffered but not yet taken by a worker."""
        return sum(
            s.statistics().current_buffer_used for s in self._send_streams
        )

    async def enqueue(self, msg: Message, aggregate_id: int) -> None:
        """Buffer ``msg`` on the aggregate's partition.

        Raises:
            DeliveryError: Subscription closed or partition full past the
                publish timeout.
        """
        if self._closed:
            msg_ = f"Subscription {self.name} is closed"
            raise DeliveryError(msg_)
        stream = self._send_streams[partition_for(aggregate_id, self.workers)]
        try:
            with anyio.fail_after(self._config.publish_timeout):
                await stream.send(msg)
        except TimeoutError as e:
            msg_ = f"Subscription {self.name} partition is full"
            raise DeliveryError(msg_) from e
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as e:
            msg_ = f"Subscription {self.name} is closed"
            raise DeliveryError(msg_) from e

    async def run(self) -> None:
        """Run one worker per partition until the streams are closed."""
        async with anyio.create_task_group() as tg:
            for index, stream in enumerate(self._receive_streams):
                tg.start_soon(self._worker, index, stream)

    def close(self) -> None:
        """Stop accepting messages; workers drain what is buffered."""
        self._closed = True
        for stream in self._send_streams:
            stream.close()

    async def _worker(
        self, index: int, stream: MemoryObjectReceiveStream[Message]
    ) -> None:
        async with stream:
            async for msg in stream:
                await self._deliver(msg)
        logger.debug("Worker %s/%d stopped", self.name, index)

    async def _deliver(self, msg: Message) -> None:
        """Deliver until acked, then settle; dead-letter when retries run out."""
        delays = self._config.redelivery.delays()
        attempt = 0
        while True:
            attempt += 1
            delivery = msg.redelivery(attempt)
            try:
                await self._handler(delivery)
            except Exception as e:
                await delivery.nack()
                wait = None if isinstance(e, PermanentError) else next(delays, None)
                if wait is None:
                    await self._dead_letter(msg, e, attempt)
                    return
                await anyio.sleep(wait)
                continue

            try:
                await delivery.ack()
            except Exception:
                logger.exception("Settling message %s failed", msg.uuid)
            return

    async def _dead_letter(self, msg: Message, error: Exception, attempts: int) -> None:
        if self._dead_letters is None:
            logger.error(
                "Dropping message %s for %s after %d attempts: %s",
                msg.uuid,
                self.name,
                attempts,
                error,
            )
            return
        try:
            await self._dead_letters.put(msg, self.name, error, attempts)
        except Exception:
            # Left unsettled: the outbox row stays and is dispatched again.
            logger.exception("Dead-lettering message %s failed", msg.uuid)
            return
        try:
            await msg.ack()
        except Exception:
            logger.exception("Settling message %s failed", msg.uuid)


class EventBus:
    """Delivers domain events to subscriptions.

    Guarantees:
    - every subscription receives every published event (fan-out);
    - events of one aggregate reach a subscription in publish order;
    - a failed delivery is redelivered with backoff until acked, then
      dead-lettered after ``config.redelivery.max_attempts``.

    Duplicates are possible and expected; subscribers must be idempotent.
    """

    def __init__(
        self,
        config: BusConfig | None = None,
        *,
        marshaler: Marshaler | None = None,
        dead_letters: DeadLetterQueue | None = None,
    ) -> None:
        self._config = config or BusConfig()
        self._marshaler = marshaler or PydanticMarshaler()
        self._dead_letters = dead_letters
        self._subscriptions: dict[str, Subscription] = {}
        self._middlewares: list[Middleware] = []
        self._running = False
        self._closed = False
        self._task_group: TaskGroup | None = None
        self._closing = anyio.Event()
        self._stopped = anyio.Event()

    @property
    def subscriptions(self) -> Sequence[Subscription]:
        return list(self._subscriptions.values())

    def add_middleware(self, middleware: Middleware) -> None:
        """Add a middleware applied to every subscription added afterwards."""
        self._middlewares.append(middleware)

    def subscribe(
        self,
        handler: HandlerFunc,
        *,
        name: str,
        workers: int | None = None,
        middlewares: Sequence[Middleware] = (),
    ) -> Subscription:
        """Register ``handler`` under a unique subscription name.

        Handlers return normally to ack; raising nacks and schedules a
        redelivery. Raise PermanentError to dead-letter immediately.
        """
        if self._closed:
            msg = "EventBus is closed"
            raise RuntimeError(msg)
        if name in self._subscriptions:
            msg = f"Subscription already registered: {name}"
            raise ValueError(msg)

        wrapped = handler
        # First middleware added is the outermost
        for middleware in reversed([*self._middlewares, *middlewares]):
            wrapped = middleware(wrapped)

        subscription = Subscription(
            name,
            wrapped,
            workers or self._config.workers,
            self._config,
            self._dead_letters,
        )
        self._subscriptions[name] = subscription
        if self._task_group is not None:
            self._task_group.start_soon(subscription.run)
        return subscription

    def unsubscribe(self, name: str) -> None:
        """Close a subscription; buffered messages are still handled."""
        subscription = self._subscriptions.pop(name)
        subscription.close()

    async def publish(
        self,
        event: DomainEvent,
        *,
        on_settled: SettleFunc | None = None,
        subscription: str | None = None,
    ) -> None:
        """Publish an event to every subscription, or to one by name.

        ``on_settled`` is awaited once every copy has been acked or
        dead-lettered.

        Raises:
            DeliveryError: Bus closed, no matching subscription, or a
                partition stayed full past the publish timeout.
        """
        if self._closed:
            msg = "EventBus is closed"
            raise DeliveryError(msg)

        targets = [
            s
            for s in self._subscriptions.values()
            if subscription is None or s.name == subscription
        ]
        if not targets:
            msg = (
                f"No subscription named {subscription!r}"
                if subscription
                else "EventBus has no subscriptions"
            )
            raise DeliveryError(msg)

        payload = self._marshaler.marshal(event)
        metadata = {**event.metadata, **event.headers()}
        settlement = _Settlement(len(targets), on_settled)
        for target in targets:
            msg = Message(
                payload=payload,
                metadata=dict(metadata),
                uuid=event.event_id,
                _ack_func=settlement.settle,
            )
            await target.enqueue(msg, event.aggregate_id)

    async def run(self) -> None:
        """Run all subscriptions until closed.

        A bus closed before it started only drains what is already buffered.
        """
        if self._running:
            msg = "EventBus is already running"
            raise RuntimeError(msg)

        self._running = True
        try:
            async with anyio.create_task_group() as tg:
                self._task_group = tg
                for subscription in self._subscriptions.values():
                    tg.start_soon(subscription.run)
                # Keep the group open while no subscription exists yet
                tg.start_soon(self._wait_closed)
        finally:
            self._running = False
            self._task_group = None
            self._stopped.set()

    async def _wait_closed(self) -> None:
        await self._closing.wait()

    async def close(self) -> None:
        """Stop the bus.

        Buffered messages are drained for up to ``close_timeout_s``; after
        that in-progress deliveries are cancelled and stay unsettled.
        """
        if self._closed:
            return
        self._closed = True
        self._closing.set()
        for subscription in self._subscriptions.values():
            subscription.close()

        if not self._running:
            return
        with anyio.move_on_after(self._config.close_timeout_s):
            await self._stopped.wait()
        if self._task_group is not None:
            self._task_group.cancel_scope.cancel()
