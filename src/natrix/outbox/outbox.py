"""Outbox rows written in the same transaction as the aggregate."""

from natrix.domain.events import DomainEvent
from natrix.store.base import Transaction

OUTBOX_PREFIX = "outbox/"
ARCHIVE_PREFIX = "archive/"

# Zero padding keeps lexical key order equal to numeric order.
_WIDTH = 12


def _suffix(event: DomainEvent) -> str:
    return f"{event.aggregate_id:0{_WIDTH}d}/{event.sequence_number:0{_WIDTH}d}"


def outbox_key(event: DomainEvent) -> str:
    return OUTBOX_PREFIX + _suffix(event)


def archive_key(event: DomainEvent) -> str:
    return ARCHIVE_PREFIX + _suffix(event)


async def write_outbox(txn: Transaction, event: DomainEvent) -> None:
    """Stage ``event`` for dispatch inside the caller's transaction."""
    await txn.put(outbox_key(event), event.model_dump_json().encode())


async def pending_events(txn: Transaction) -> list[DomainEvent]:
    """Undispatched events, grouped by aggregate and in sequence order."""
    rows = await txn.scan(OUTBOX_PREFIX)
    return [DomainEvent.model_validate_json(value) for _, value in rows]


async def archived_events(txn: Transaction, aggregate_id: int) -> list[DomainEvent]:
    """Dispatched events kept for audit, in sequence order."""
    rows = await txn.scan(f"{ARCHIVE_PREFIX}{aggregate_id:0{_WIDTH}d}/")
    return [DomainEvent.model_validate_json(value) for _, value in rows]
