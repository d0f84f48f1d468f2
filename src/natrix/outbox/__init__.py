"""Transactional outbox."""

from natrix.outbox.dispatcher import DispatcherConfig, EventPublisher, OutboxDispatcher
from natrix.outbox.outbox import (
    archived_events,
    outbox_key,
    pending_events,
    write_outbox,
)

__all__ = [
    "DispatcherConfig",
    "EventPublisher",
    "OutboxDispatcher",
    "archived_events",
    "outbox_key",
    "pending_events",
    "write_outbox",
]
