"""Dead-letter storage for events that repeatedly failed to apply."""

from __future__ import annotations

import logging
import traceback as tb
from datetime import UTC, datetime
from typing import TYPE_CHECKING
from uuid import UUID

import pydantic
from pydantic import BaseModel, Field

from natrix.bus.message import Message
from natrix.domain.events import DomainEvent
from natrix.errors import NotFoundError, PermanentError, StorageError
from natrix.marshaler import Marshaler, PydanticMarshaler
from natrix.retry import RetryPolicy, retry_async
from natrix.store.base import Store

if TYPE_CHECKING:
    from natrix.bus.event_bus import EventBus

DEAD_LETTER_PREFIX = "deadletter/"

logger = logging.getLogger("natrix.bus.dead_letter")


class DeadLetter(BaseModel):
    """A message parked for operator intervention."""

    message_uuid: UUID
    subscription: str
    payload: str
    metadata: dict[str, str] = Field(default_factory=dict)
    error: str
    error_type: str
    attempts: int
    traceback: str | None = None
    dead_lettered_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def event(self, marshaler: Marshaler | None = None) -> DomainEvent:
        """Parse the original envelope.

        Raises:
            PermanentError: The payload is not a valid DomainEvent.
        """
        marshaler = marshaler or PydanticMarshaler()
        try:
            return marshaler.unmarshal(self.payload.encode(), DomainEvent)
        except (pydantic.ValidationError, ValueError) as e:
            raise PermanentError(e) from e


def dead_letter_key(subscription: str, message_uuid: UUID) -> str:
    return f"{DEAD_LETTER_PREFIX}{subscription}/{message_uuid}"


class DeadLetterQueue:
    """Durable dead-letter area kept in a store.

    Usually the query store: the projection that failed is the one an
    operator will want to inspect next to the read models.
    """

    def __init__(
        self,
        store: Store,
        *,
        retry_policy: RetryPolicy | None = None,
        include_traceback: bool = True,
    ) -> None:
        self._store = store
        self._retry = retry_policy or RetryPolicy()
        self._include_traceback = include_traceback

    async def put(
        self,
        msg: Message,
        subscription: str,
        error: Exception,
        attempts: int,
    ) -> DeadLetter:
        """Record ``msg`` as dead. Retries StorageError per the policy."""
        cause = error.cause if isinstance(error, PermanentError) else error
        letter = DeadLetter(
            message_uuid=msg.uuid,
            subscription=subscription,
            payload=msg.payload.decode(errors="replace"),
            metadata=dict(msg.metadata),
            error=str(cause),
            error_type=type(cause).__name__,
            attempts=attempts,
            traceback=(
                "".join(tb.format_exception(cause)) if self._include_traceback else None
            ),
        )

        async def write() -> None:
            async with self._store.begin() as txn:
                await txn.put(
                    dead_letter_key(subscription, letter.message_uuid),
                    letter.model_dump_json().encode(),
                )

        await retry_async(write, self._retry, retry_on=(StorageError,))
        logger.warning(
            "Dead-lettered message %s for %s after %d attempts: %s",
            msg.uuid,
            subscription,
            attempts,
            letter.error,
        )
        return letter

    async def list(self, subscription: str | None = None) -> list[DeadLetter]:
        prefix = DEAD_LETTER_PREFIX
        if subscription is not None:
            prefix = f"{DEAD_LETTER_PREFIX}{subscription}/"
        async with self._store.begin() as txn:
            rows = await txn.scan(prefix)
        letters = [DeadLetter.model_validate_json(value) for _, value in rows]
        if subscription is not None:
            letters = [dl for dl in letters if dl.subscription == subscription]
        return sorted(letters, key=lambda dl: dl.dead_lettered_at)

    async def get(self, subscription: str, message_uuid: UUID) -> DeadLetter:
        async with self._store.begin() as txn:
            raw = await txn.get(dead_letter_key(subscription, message_uuid))
        if raw is None:
            msg = f"No dead letter {message_uuid} for {subscription}"
            raise NotFoundError(msg)
        return DeadLetter.model_validate_json(raw)

    async def discard(self, subscription: str, message_uuid: UUID) -> None:
        """Drop a dead letter without redelivering it."""
        await self.get(subscription, message_uuid)
        async with self._store.begin() as txn:
            await txn.delete(dead_letter_key(subscription, message_uuid))

    async def requeue(
        self, subscription: str, message_uuid: UUID, bus: EventBus
    ) -> DomainEvent:
        """Publish a dead letter again to the subscription that gave up on it.

        The record is removed only after the bus accepted the event.
        """
        letter = await self.get(subscription, message_uuid)
        event = letter.event()
        await bus.publish(event, subscription=subscription)
        async with self._store.begin() as txn:
            await txn.delete(dead_letter_key(subscription, message_uuid))
        logger.info("Requeued dead letter %s to %s", message_uuid, subscription)
        return event
