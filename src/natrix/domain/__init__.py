"""Order domain: aggregate, commands, events and read models."""

from natrix.domain.commands import (
    CancelOrder,
    Command,
    CreateOrder,
    DeleteOrder,
    UpdateOrder,
    parse_command,
)
from natrix.domain.events import (
    DomainEvent,
    EventPayload,
    EventType,
    OrderCancelled,
    OrderCreated,
    OrderDeleted,
    OrderUpdated,
)
from natrix.domain.order import Order, OrderStatus
from natrix.domain.views import OrderFilter, OrderView

__all__ = [
    "CancelOrder",
    "Command",
    "CreateOrder",
    "DeleteOrder",
    "DomainEvent",
    "EventPayload",
    "EventType",
    "Order",
    "OrderCancelled",
    "OrderCreated",
    "OrderDeleted",
    "OrderFilter",
    "OrderStatus",
    "OrderUpdated",
    "OrderView",
    "UpdateOrder",
    "parse_command",
]
