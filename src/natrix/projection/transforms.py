"""Projection transforms, one per event type.

A transform maps the current view (None if absent) and an event to the next
view, or None to remove it. The table below must cover every EventType;
importing this module fails otherwise.
"""

from collections.abc import Callable, Mapping
from typing import cast

from natrix.domain.events import (
    DomainEvent,
    EventType,
    OrderCancelled,
    OrderCreated,
    OrderUpdated,
)
from natrix.domain.order import OrderStatus
from natrix.domain.views import OrderView
from natrix.errors import ProjectionError

Transform = Callable[[OrderView | None, DomainEvent], OrderView | None]


def _require(view: OrderView | None, event: DomainEvent) -> OrderView:
    if view is None:
        msg = (
            f"{event.event_type} for order {event.aggregate_id} "
            f"(seq {event.sequence_number}) has no view to apply to"
        )
        raise ProjectionError(msg)
    return view


def order_created(view: OrderView | None, event: DomainEvent) -> OrderView:
    if view is not None:
        msg = f"order {event.aggregate_id} already has a view"
        raise ProjectionError(msg)
    payload = cast(OrderCreated, event.payload)
    return OrderView(
        id=event.aggregate_id,
        product=payload.product,
        quantity=payload.quantity,
        price=payload.price,
        version=event.sequence_number,
    )


def order_updated(view: OrderView | None, event: DomainEvent) -> OrderView:
    current = _require(view, event)
    payload = cast(OrderUpdated, event.payload)
    changes = payload.model_dump(exclude={"type"}, exclude_none=True)
    return current.model_copy(update={**changes, "version": event.sequence_number})


def order_cancelled(view: OrderView | None, event: DomainEvent) -> OrderView:
    # Cancelled orders stay readable; only their status changes.
    current = _require(view, event)
    payload = cast(OrderCancelled, event.payload)
    return current.model_copy(
        update={
            "status": OrderStatus.CANCELLED,
            "cancel_reason": payload.reason,
            "version": event.sequence_number,
        }
    )


def order_deleted(view: OrderView | None, event: DomainEvent) -> None:
    _require(view, event)
    return None


TRANSFORMS: Mapping[EventType, Transform] = {
    EventType.ORDER_CREATED: order_created,
    EventType.ORDER_UPDATED: order_updated,
    EventType.ORDER_CANCELLED: order_cancelled,
    EventType.ORDER_DELETED: order_deleted,
}


def check_transforms(transforms: Mapping[EventType, Transform]) -> None:
    """Raise if any event type lacks a transform."""
    missing = set(EventType) - set(transforms)
    if missing:
        names = ", ".join(sorted(t.value for t in missing))
        msg = f"No projection transform for: {names}"
        raise RuntimeError(msg)


check_transforms(TRANSFORMS)
