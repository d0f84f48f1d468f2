"""Projection engine: idempotent, ordered application of events to views."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import StrEnum

import anyio

from natrix.bus.dead_letter import dead_letter_key
from natrix.bus.message import Message
from natrix.domain.events import DomainEvent, EventType
from natrix.domain.views import OrderView
from natrix.errors import PermanentError, ProjectionError, ProjectionGapError
from natrix.marshaler import Marshaler, PydanticMarshaler
from natrix.projection.checkpoint import (
    ProjectionCheckpoint,
    load_checkpoint,
    save_checkpoint,
)
from natrix.projection.transforms import TRANSFORMS, Transform, check_transforms
from natrix.store.base import Store, Transaction

VIEW_PREFIX = "view/order/"

logger = logging.getLogger("natrix.projection")


def view_key(aggregate_id: int) -> str:
    return f"{VIEW_PREFIX}{aggregate_id}"


async def load_view(txn: Transaction, aggregate_id: int) -> OrderView | None:
    raw = await txn.get(view_key(aggregate_id))
    return OrderView.model_validate_json(raw) if raw is not None else None


class ApplyResult(StrEnum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"


@dataclass
class ProjectionConfig:
    """Configuration for ProjectionEngine."""

    subscription_name: str = "projection.orders"
    """Name of the bus subscription feeding the engine."""

    workers: int = 4
    """Bus partitions feeding the engine."""

    apply_timeout: float = 10.0
    """Seconds a single delivery may take before it is retried."""

    max_held_per_aggregate: int = 100
    """Out-of-order events kept in memory per aggregate awaiting a predecessor."""


class ProjectionEngine:
    """Applies domain events to read models in the query store.

    For each event, under a per-aggregate lock:

    - ``seq <= checkpoint``: duplicate, discarded without writing;
    - ``seq == checkpoint + 1``: transformed, view and checkpoint written in
      one transaction, then held successors are applied in order;
    - ``seq > checkpoint + 1``: held in memory and ProjectionGapError raised,
      so the bus redelivers it with backoff.
    """

    def __init__(
        self,
        store: Store,
        config: ProjectionConfig | None = None,
        *,
        marshaler: Marshaler | None = None,
        transforms: Mapping[EventType, Transform] = TRANSFORMS,
    ) -> None:
        check_transforms(transforms)
        self._store = store
        self._config = config or ProjectionConfig()
        self._marshaler = marshaler or PydanticMarshaler()
        self._transforms = transforms
        self._locks: dict[int, anyio.Lock] = {}
        self._lock_users: dict[int, int] = {}
        self._held: dict[int, dict[int, DomainEvent]] = {}

    @property
    def config(self) -> ProjectionConfig:
        return self._config

    @asynccontextmanager
    async def _locked(self, aggregate_id: int) -> AsyncIterator[None]:
        lock = self._locks.setdefault(aggregate_id, anyio.Lock())
        self._lock_users[aggregate_id] = self._lock_users.get(aggregate_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[aggregate_id] -= 1
            if not self._lock_users[aggregate_id]:
                del self._lock_users[aggregate_id]
                del self._locks[aggregate_id]

    async def checkpoint(self, aggregate_id: int) -> ProjectionCheckpoint:
        async with self._store.begin() as txn:
            return await load_checkpoint(txn, aggregate_id)

    def held(self, aggregate_id: int) -> list[int]:
        """Sequence numbers held for ``aggregate_id``, ascending."""
        return sorted(self._held.get(aggregate_id, {}))

    async def handle(self, msg: Message) -> None:
        """Bus handler: unmarshal the envelope and apply it."""
        try:
            event = self._marshaler.unmarshal(msg.payload, DomainEvent)
        except ValueError as e:
            error = ProjectionError(f"malformed event in message {msg.uuid}: {e}")
            raise PermanentError(error) from e
        await self.apply(event)

    async def apply(self, event: DomainEvent) -> ApplyResult:
        """Apply one event.

        Raises:
            ProjectionGapError: A predecessor is missing; the event is held.
            PermanentError: The event cannot be projected.
            StorageError, ConflictError: The write failed; nothing changed.
        """
        async with self._locked(event.aggregate_id):
            result = await self._apply_one(event)
            if result is ApplyResult.APPLIED:
                await self._drain_held(event.aggregate_id, event.sequence_number + 1)
            else:
                logger.debug(
                    "Discarded duplicate %s seq %d of order %d",
                    event.event_type,
                    event.sequence_number,
                    event.aggregate_id,
                )
            return result

    async def _apply_one(
        self, event: DomainEvent, *, drained: bool = False
    ) -> ApplyResult:
        aggregate_id = event.aggregate_id
        async with self._store.begin() as txn:
            checkpoint = await load_checkpoint(txn, aggregate_id)
            if event.sequence_number <= checkpoint.sequence_number:
                return ApplyResult.DUPLICATE

            expected = checkpoint.sequence_number + 1
            if event.sequence_number > expected:
                self._hold(event)
                raise ProjectionGapError(aggregate_id, expected, event.sequence_number)

            transform = self._transforms[event.event_type]
            try:
                view = transform(await load_view(txn, aggregate_id), event)
            except ProjectionError as e:
                raise PermanentError(e) from e

            if view is None:
                await txn.delete(view_key(aggregate_id))
            else:
                await txn.put(view_key(aggregate_id), view.model_dump_json().encode())
            await save_checkpoint(
                txn,
                ProjectionCheckpoint(
                    aggregate_id=aggregate_id,
                    sequence_number=event.sequence_number,
                    event_id=event.event_id,
                ),
            )
            if drained:
                # The bus may have given up on this event while it was held.
                await txn.delete(
                    dead_letter_key(self._config.subscription_name, event.event_id)
                )

        logger.debug(
            "Applied %s seq %d to order %d",
            event.event_type,
            event.sequence_number,
            aggregate_id,
        )
        return ApplyResult.APPLIED

    def _hold(self, event: DomainEvent) -> None:
        held = self._held.setdefault(event.aggregate_id, {})
        if event.sequence_number in held:
            return
        if len(held) >= self._config.max_held_per_aggregate:
            logger.warning(
                "Not holding seq %d of order %d: %d events already held",
                event.sequence_number,
                event.aggregate_id,
                len(held),
            )
            return
        held[event.sequence_number] = event

    async def _drain_held(self, aggregate_id: int, next_seq: int) -> None:
        """Apply held events that became contiguous."""
        held = self._held.get(aggregate_id)
        if not held:
            return
        for seq in [s for s in held if s < next_seq]:
            del held[seq]

        while next_seq in held:
            event = held.pop(next_seq)
            try:
                await self._apply_one(event, drained=True)
            except Exception:
                # Still pending on the bus; the redelivery will retry it.
                logger.warning(
                    "Held seq %d of order %d failed to apply",
                    next_seq,
                    aggregate_id,
                    exc_info=True,
                )
                break
            next_seq += 1

        if not held:
            del self._held[aggregate_id]
