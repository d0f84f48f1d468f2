"""Command handler: validates commands and writes aggregate + outbox atomically."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from natrix.domain.commands import (
    CancelOrder,
    Command,
    CreateOrder,
    DeleteOrder,
    UpdateOrder,
)
from natrix.domain.events import DomainEvent, PayloadModel
from natrix.domain.order import Order
from natrix.errors import ConflictError, NotFoundError, StorageError, ValidationError
from natrix.outbox.outbox import write_outbox
from natrix.retry import RetryPolicy, retry_async
from natrix.store.base import Store, Transaction

AGGREGATE_PREFIX = "aggregate/order/"
COUNTER_KEY = "counter/order"

logger = logging.getLogger("natrix.commands")


def aggregate_key(aggregate_id: int) -> str:
    return f"{AGGREGATE_PREFIX}{aggregate_id}"


@dataclass(frozen=True)
class CommandResult:
    aggregate_id: int
    version: int


class CommandHandler:
    """Applies commands to the command store.

    Each accepted command commits the aggregate row and its outbox row in
    one transaction; a rejected or failed command writes nothing.
    """

    def __init__(
        self,
        store: Store,
        *,
        retry_policy: RetryPolicy | None = None,
        on_commit: Callable[[], None] | None = None,
        event_metadata: Callable[[], dict[str, str]] | None = None,
    ) -> None:
        """Initialize the command handler.

        Args:
            store: Command store.
            retry_policy: Backoff for StorageError (and id allocation races).
            on_commit: Called after every successful commit, e.g. to wake
                the outbox dispatcher.
            event_metadata: Supplies metadata stamped on each new event,
                e.g. trace-context headers.
        """
        self._store = store
        self._retry = retry_policy or RetryPolicy()
        self._on_commit = on_commit
        self._event_metadata = event_metadata

    async def submit(self, command: Command) -> CommandResult:
        """Validate and apply ``command``.

        Raises:
            ValidationError: A business rule rejected the command.
            NotFoundError: The command targets an unknown aggregate.
            ConflictError: ``expected_version`` is stale or a concurrent
                command changed the aggregate first.
            StorageError: The store kept failing after retries.
        """
        match command:
            case CreateOrder():
                # A conflict on create can only be a race on the id counter.
                result = await retry_async(
                    lambda: self._create(command),
                    self._retry,
                    retry_on=(StorageError, ConflictError),
                )
            case UpdateOrder() | CancelOrder() | DeleteOrder():
                result = await retry_async(
                    lambda: self._change(command),
                    self._retry,
                    retry_on=(StorageError,),
                )
            case _:
                msg = f"Unsupported command {type(command).__name__}"
                raise ValidationError(msg)

        logger.info(
            "%s accepted: order %d at version %d",
            type(command).__name__,
            result.aggregate_id,
            result.version,
        )
        if self._on_commit is not None:
            self._on_commit()
        return result

    def _new_event(
        self, order_id: int, version: int, payload: PayloadModel
    ) -> DomainEvent:
        metadata = self._event_metadata() if self._event_metadata else None
        return DomainEvent.record(order_id, version, payload, metadata)

    async def _create(self, cmd: CreateOrder) -> CommandResult:
        async with self._store.begin() as txn:
            raw = await txn.get(COUNTER_KEY)
            order_id = int(raw) + 1 if raw is not None else 1
            order, payload = Order.create(order_id, cmd)
            await txn.put(COUNTER_KEY, str(order_id).encode())
            await self._save(txn, order)
            await write_outbox(txn, self._new_event(order.id, order.version, payload))
        return CommandResult(order.id, order.version)

    async def _change(
        self, cmd: UpdateOrder | CancelOrder | DeleteOrder
    ) -> CommandResult:
        async with self._store.begin() as txn:
            order = await self._load(txn, cmd.aggregate_id)
            version = order.version + 1
            match cmd:
                case UpdateOrder():
                    order, payload = order.update(cmd)
                    await self._save(txn, order)
                case CancelOrder():
                    order, payload = order.cancel(cmd)
                    await self._save(txn, order)
                case DeleteOrder():
                    payload = order.delete(cmd)
                    await txn.delete(aggregate_key(order.id))
            await write_outbox(txn, self._new_event(order.id, version, payload))
        return CommandResult(order.id, version)

    async def _load(self, txn: Transaction, aggregate_id: int) -> Order:
        raw = await txn.get(aggregate_key(aggregate_id))
        if raw is None:
            msg = f"order {aggregate_id} does not exist"
            raise NotFoundError(msg)
        return Order.model_validate_json(raw)

    async def _save(self, txn: Transaction, order: Order) -> None:
        await txn.put(aggregate_key(order.id), order.model_dump_json().encode())

    async def get_aggregate(self, aggregate_id: int) -> Order:
        """Current write-side state, for command callers that need a version."""
        async with self._store.begin() as txn:
            return await self._load(txn, aggregate_id)
