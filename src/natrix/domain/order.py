"""Order aggregate: business rules of the command side."""

from __future__ import annotations

import math
from enum import StrEnum

from pydantic import BaseModel, ConfigDict

from natrix.domain.commands import CancelOrder, CreateOrder, DeleteOrder, UpdateOrder
from natrix.domain.events import (
    OrderCancelled,
    OrderCreated,
    OrderDeleted,
    OrderUpdated,
)
from natrix.errors import ConflictError, ValidationError

AGGREGATE_TYPE = "order"


class OrderStatus(StrEnum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


def _check_product(product: str) -> None:
    if not product.strip():
        msg = "product must not be empty"
        raise ValidationError(msg)


def _check_quantity(quantity: int) -> None:
    if quantity <= 0:
        msg = f"quantity must be greater than 0, got {quantity}"
        raise ValidationError(msg)


def _check_price(price: float) -> None:
    if not math.isfinite(price) or price < 0:
        msg = f"price must be a non-negative number, got {price}"
        raise ValidationError(msg)


class Order(BaseModel):
    """Write-side state of one order.

    Each method validates a command against the current state and returns
    the next state together with the event describing the change. Nothing
    is persisted here.
    """

    model_config = ConfigDict(frozen=True)

    id: int
    version: int
    product: str
    quantity: int
    price: float
    status: OrderStatus = OrderStatus.ACTIVE

    @classmethod
    def create(cls, aggregate_id: int, cmd: CreateOrder) -> tuple[Order, OrderCreated]:
        _check_product(cmd.product)
        _check_quantity(cmd.quantity)
        _check_price(cmd.price)
        order = cls(
            id=aggregate_id,
            version=1,
            product=cmd.product,
            quantity=cmd.quantity,
            price=cmd.price,
        )
        return order, OrderCreated(
            product=cmd.product, quantity=cmd.quantity, price=cmd.price
        )

    def check_version(self, expected_version: int) -> None:
        if expected_version != self.version:
            msg = (
                f"order {self.id} is at version {self.version}, "
                f"expected {expected_version}"
            )
            raise ConflictError(msg, expected=expected_version, actual=self.version)

    def _check_active(self) -> None:
        if self.status is OrderStatus.CANCELLED:
            msg = f"order {self.id} is cancelled"
            raise ValidationError(msg)

    def update(self, cmd: UpdateOrder) -> tuple[Order, OrderUpdated]:
        self.check_version(cmd.expected_version)
        self._check_active()

        changes: dict[str, object] = {}
        if cmd.product is not None and cmd.product != self.product:
            _check_product(cmd.product)
            changes["product"] = cmd.product
        if cmd.quantity is not None and cmd.quantity != self.quantity:
            _check_quantity(cmd.quantity)
            changes["quantity"] = cmd.quantity
        if cmd.price is not None and cmd.price != self.price:
            _check_price(cmd.price)
            changes["price"] = cmd.price
        if not changes:
            msg = f"update of order {self.id} changes nothing"
            raise ValidationError(msg)

        order = self.model_copy(update={**changes, "version": self.version + 1})
        return order, OrderUpdated(**changes)  # type: ignore[arg-type]

    def cancel(self, cmd: CancelOrder) -> tuple[Order, OrderCancelled]:
        self.check_version(cmd.expected_version)
        self._check_active()
        order = self.model_copy(
            update={"status": OrderStatus.CANCELLED, "version": self.version + 1}
        )
        return order, OrderCancelled(reason=cmd.reason)

    def delete(self, cmd: DeleteOrder) -> OrderDeleted:
        self.check_version(cmd.expected_version)
        return OrderDeleted()
