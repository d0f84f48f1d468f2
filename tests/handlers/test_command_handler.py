"""Tests for CommandHandler."""

from collections.abc import AsyncGenerator, Sequence
from typing import Any

import anyio
import pytest

from natrix.domain import (
    CancelOrder,
    CreateOrder,
    DeleteOrder,
    EventType,
    UpdateOrder,
)
from natrix.domain.order import OrderStatus
from natrix.errors import ConflictError, NotFoundError, StorageError, ValidationError
from natrix.handlers import CommandHandler, CommandResult
from natrix.outbox import pending_events
from natrix.retry import RetryPolicy
from natrix.store import InMemoryStore, SQLiteDialect, SQLStore, Store
from natrix.store.memory import InMemoryTransaction

pytestmark = pytest.mark.anyio

EXPECTED_VERSION = 2
CONCURRENT_CREATES = 5
TIMEOUT_SECONDS = 2


class FlakyStore(InMemoryStore):
    """Fails the next ``failures`` commits with StorageError."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    def begin(self) -> InMemoryTransaction:
        store = self

        class Txn(InMemoryTransaction):
            async def _apply(self, reads, writes) -> None:
                if store.failures:
                    store.failures -= 1
                    raise StorageError("connection reset")
                await super()._apply(reads, writes)

        return Txn(self)


async def outbox(store: Store):
    async with store.begin() as txn:
        return await pending_events(txn)


def widget() -> CreateOrder:
    return CreateOrder(product="widget", quantity=2, price=9.99)


@pytest.fixture
def command_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def handler(command_store: InMemoryStore, fast_retry: RetryPolicy) -> CommandHandler:
    return CommandHandler(command_store, retry_policy=fast_retry)


class TestCreate:
    async def test_create_writes_aggregate_and_outbox(
        self, handler: CommandHandler, command_store: InMemoryStore
    ) -> None:
        result = await handler.submit(widget())

        assert result == CommandResult(aggregate_id=1, version=1)

        order = await handler.get_aggregate(1)
        assert order.product == "widget"
        assert order.quantity == 2  # noqa: PLR2004
        assert order.price == pytest.approx(9.99)

        [event] = await outbox(command_store)
        assert event.aggregate_id == 1
        assert event.sequence_number == 1
        assert event.event_type is EventType.ORDER_CREATED
        assert event.payload.product == "widget"

    async def test_ids_are_sequential(self, handler: CommandHandler) -> None:
        first = await handler.submit(widget())
        second = await handler.submit(widget())
        assert (first.aggregate_id, second.aggregate_id) == (1, 2)

    async def test_concurrent_creates_get_unique_ids(
        self, command_store: InMemoryStore
    ) -> None:
        handler = CommandHandler(
            command_store,
            retry_policy=RetryPolicy(max_attempts=10, delay=0.001, jitter=0.5),
        )
        results: list[CommandResult] = []

        async def create() -> None:
            results.append(await handler.submit(widget()))

        async with anyio.create_task_group() as tg:
            for _ in range(CONCURRENT_CREATES):
                tg.start_soon(create)

        ids = sorted(r.aggregate_id for r in results)
        assert ids == list(range(1, CONCURRENT_CREATES + 1))
        assert len(await outbox(command_store)) == CONCURRENT_CREATES

    async def test_invalid_create_writes_nothing(
        self, handler: CommandHandler, command_store: InMemoryStore
    ) -> None:
        with pytest.raises(ValidationError):
            await handler.submit(CreateOrder(product="widget", quantity=0, price=1))

        assert command_store.snapshot() == {}


class TestChange:
    async def test_update_bumps_version(
        self, handler: CommandHandler, command_store: InMemoryStore
    ) -> None:
        await handler.submit(widget())

        result = await handler.submit(
            UpdateOrder(aggregate_id=1, expected_version=1, quantity=5)
        )

        assert result == CommandResult(aggregate_id=1, version=EXPECTED_VERSION)
        events = await outbox(command_store)
        assert [e.sequence_number for e in events] == [1, 2]
        assert events[1].payload.quantity == 5  # noqa: PLR2004

    async def test_stale_version_conflicts(
        self, handler: CommandHandler, command_store: InMemoryStore
    ) -> None:
        await handler.submit(widget())
        await handler.submit(UpdateOrder(aggregate_id=1, expected_version=1, price=1))
        before = command_store.snapshot()

        with pytest.raises(ConflictError) as exc_info:
            await handler.submit(
                UpdateOrder(aggregate_id=1, expected_version=1, price=2)
            )

        assert exc_info.value.actual == EXPECTED_VERSION
        assert command_store.snapshot() == before

    async def test_concurrent_updates_one_wins(
        self, handler: CommandHandler, command_store: InMemoryStore
    ) -> None:
        await handler.submit(widget())
        outcomes: list[str] = []

        async def update(quantity: int) -> None:
            try:
                await handler.submit(
                    UpdateOrder(aggregate_id=1, expected_version=1, quantity=quantity)
                )
                outcomes.append("ok")
            except ConflictError:
                outcomes.append("conflict")

        async with anyio.create_task_group() as tg:
            tg.start_soon(update, 5)
            tg.start_soon(update, 6)

        assert sorted(outcomes) == ["conflict", "ok"]
        assert (await handler.get_aggregate(1)).version == EXPECTED_VERSION
        assert len(await outbox(command_store)) == EXPECTED_VERSION

    async def test_cancel(self, handler: CommandHandler) -> None:
        await handler.submit(widget())
        await handler.submit(CancelOrder(aggregate_id=1, expected_version=1))

        order = await handler.get_aggregate(1)
        assert order.status is OrderStatus.CANCELLED

    async def test_delete_removes_aggregate(
        self, handler: CommandHandler, command_store: InMemoryStore
    ) -> None:
        await handler.submit(widget())
        result = await handler.submit(DeleteOrder(aggregate_id=1, expected_version=1))

        assert result.version == EXPECTED_VERSION
        with pytest.raises(NotFoundError):
            await handler.get_aggregate(1)
        events = await outbox(command_store)
        assert events[-1].event_type is EventType.ORDER_DELETED

    async def test_unknown_aggregate(self, handler: CommandHandler) -> None:
        with pytest.raises(NotFoundError):
            await handler.submit(
                UpdateOrder(aggregate_id=42, expected_version=1, quantity=1)
            )


class TestStorageFailures:
    async def test_transient_failure_is_retried(self, fast_retry: RetryPolicy) -> None:
        store = FlakyStore(failures=2)
        handler = CommandHandler(store, retry_policy=fast_retry)

        result = await handler.submit(widget())

        assert result.aggregate_id == 1
        assert len(await outbox(store)) == 1

    async def test_persistent_failure_writes_nothing(
        self, fast_retry: RetryPolicy
    ) -> None:
        store = FlakyStore(failures=fast_retry.max_attempts)
        handler = CommandHandler(store, retry_policy=fast_retry)

        with pytest.raises(StorageError):
            await handler.submit(widget())
        assert store.snapshot() == {}


class TestHooks:
    async def test_on_commit_called_per_accepted_command(
        self, command_store: InMemoryStore
    ) -> None:
        commits: list[int] = []
        handler = CommandHandler(command_store, on_commit=lambda: commits.append(1))

        await handler.submit(widget())
        with pytest.raises(ValidationError):
            await handler.submit(CreateOrder(product="", quantity=1, price=1))

        assert commits == [1]

    async def test_event_metadata_is_stamped(
        self, command_store: InMemoryStore
    ) -> None:
        handler = CommandHandler(
            command_store, event_metadata=lambda: {"traceparent": "00-abc-def-01"}
        )

        await handler.submit(widget())

        [event] = await outbox(command_store)
        assert event.metadata == {"traceparent": "00-abc-def-01"}


class StallingMemoryStore(InMemoryStore):
    """Blocks inside commit once ``stall`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.stall = False
        self.committing = anyio.Event()

    def begin(self) -> InMemoryTransaction:
        store = self

        class Txn(InMemoryTransaction):
            async def _apply(self, reads, writes) -> None:
                if store.stall:
                    store.committing.set()
                    await anyio.sleep_forever()
                await super()._apply(reads, writes)

        return Txn(self)


class StallingSQLStore(SQLStore):
    """Blocks on the outbox insert, after the aggregate row was written."""

    def __init__(self, connection: Any) -> None:
        super().__init__(connection, SQLiteDialect())
        self.stall = False
        self.committing = anyio.Event()

    async def _execute(self, query: str, params: Sequence[Any] = ()) -> Any:
        if (
            self.stall
            and params
            and isinstance(params[0], str)
            and params[0].startswith("outbox/")
        ):
            self.committing.set()
            await anyio.sleep_forever()
        return await super()._execute(query, params)


async def contents(store: Store) -> list[tuple[str, bytes]]:
    async with store.begin() as txn:
        return await txn.scan("")


@pytest.fixture(params=["memory", "sqlite"])
async def stalling_store(
    request, sqlite_connection
) -> AsyncGenerator[StallingMemoryStore | StallingSQLStore, None]:
    if request.param == "memory":
        yield StallingMemoryStore()
    else:
        async with StallingSQLStore(sqlite_connection) as store:
            yield store


class TestCancellation:
    async def cancel_during_commit(
        self,
        handler: CommandHandler,
        store: StallingMemoryStore | StallingSQLStore,
        command: CreateOrder | UpdateOrder,
    ) -> None:
        store.stall = True
        async with anyio.create_task_group() as tg:
            tg.start_soon(handler.submit, command)
            with anyio.fail_after(TIMEOUT_SECONDS):
                await store.committing.wait()
            tg.cancel_scope.cancel()
        store.stall = False

    async def test_cancelled_create_writes_nothing(
        self,
        stalling_store: StallingMemoryStore | StallingSQLStore,
        fast_retry: RetryPolicy,
    ) -> None:
        handler = CommandHandler(stalling_store, retry_policy=fast_retry)

        await self.cancel_during_commit(handler, stalling_store, widget())

        assert await contents(stalling_store) == []
        result = await handler.submit(widget())
        assert result == CommandResult(aggregate_id=1, version=1)

    async def test_cancelled_update_leaves_aggregate_and_outbox(
        self,
        stalling_store: StallingMemoryStore | StallingSQLStore,
        fast_retry: RetryPolicy,
    ) -> None:
        handler = CommandHandler(stalling_store, retry_policy=fast_retry)
        await handler.submit(widget())
        before = await contents(stalling_store)

        update = UpdateOrder(aggregate_id=1, expected_version=1, quantity=5)
        await self.cancel_during_commit(handler, stalling_store, update)

        assert await contents(stalling_store) == before
        assert len(await outbox(stalling_store)) == 1
        result = await handler.submit(update)
        assert result.version == EXPECTED_VERSION
