"""Read models served by the query side."""

from pydantic import BaseModel, ConfigDict, Field

from natrix.domain.order import OrderStatus


class OrderView(BaseModel):
    """Denormalized order as seen by readers.

    ``version`` is the sequence number of the last event applied to it.
    """

    model_config = ConfigDict(frozen=True)

    id: int
    product: str
    quantity: int
    price: float
    status: OrderStatus = OrderStatus.ACTIVE
    version: int
    cancel_reason: str | None = None


class OrderFilter(BaseModel):
    """Criteria for listing orders. Unset fields match everything."""

    status: OrderStatus | None = None
    product: str | None = None
    min_quantity: int | None = None
    limit: int | None = Field(default=None, ge=1)

    def matches(self, view: OrderView) -> bool:
        if self.status is not None and view.status != self.status:
            return False
        if self.product is not None and view.product != self.product:
            return False
        return self.min_quantity is None or view.quantity >= self.min_quantity
