"""Domain events: a closed set of payloads inside one envelope."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

SCHEMA_VERSION = 1

# Metadata keys carried on bus messages.
EVENT_ID_KEY = "event_id"
AGGREGATE_ID_KEY = "aggregate_id"
SEQUENCE_NUMBER_KEY = "sequence_number"
EVENT_TYPE_KEY = "event_type"
OCCURRED_AT_KEY = "occurred_at"


class EventType(StrEnum):
    ORDER_CREATED = "OrderCreated"
    ORDER_UPDATED = "OrderUpdated"
    ORDER_CANCELLED = "OrderCancelled"
    ORDER_DELETED = "OrderDeleted"


class OrderCreated(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal[EventType.ORDER_CREATED] = EventType.ORDER_CREATED
    product: str
    quantity: int
    price: float


class OrderUpdated(BaseModel):
    """Only the fields that changed are set."""

    model_config = ConfigDict(frozen=True)

    type: Literal[EventType.ORDER_UPDATED] = EventType.ORDER_UPDATED
    product: str | None = None
    quantity: int | None = None
    price: float | None = None


class OrderCancelled(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal[EventType.ORDER_CANCELLED] = EventType.ORDER_CANCELLED
    reason: str | None = None


class OrderDeleted(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal[EventType.ORDER_DELETED] = EventType.ORDER_DELETED


PayloadModel = OrderCreated | OrderUpdated | OrderCancelled | OrderDeleted

EventPayload = Annotated[
    PayloadModel,
    Field(discriminator="type"),
]


class DomainEvent(BaseModel):
    """Immutable fact recorded by the command side.

    ``sequence_number`` is per aggregate and equals the aggregate version
    the command produced, so the first event of an aggregate is 1.
    """

    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(default_factory=uuid4)
    aggregate_id: int
    sequence_number: int = Field(ge=1)
    event_type: EventType
    payload: EventPayload
    schema_version: int = SCHEMA_VERSION
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _type_matches_payload(self) -> DomainEvent:
        if self.event_type != self.payload.type:
            msg = (
                f"event_type {self.event_type} does not match "
                f"payload type {self.payload.type}"
            )
            raise ValueError(msg)
        return self

    @classmethod
    def record(
        cls,
        aggregate_id: int,
        sequence_number: int,
        payload: PayloadModel,
        metadata: dict[str, str] | None = None,
    ) -> DomainEvent:
        """Create the event for a state change that was just decided."""
        return cls(
            aggregate_id=aggregate_id,
            sequence_number=sequence_number,
            event_type=payload.type,
            payload=payload,
            metadata=metadata or {},
        )

    def headers(self) -> dict[str, str]:
        """Envelope fields as message metadata."""
        return {
            EVENT_ID_KEY: str(self.event_id),
            AGGREGATE_ID_KEY: str(self.aggregate_id),
            SEQUENCE_NUMBER_KEY: str(self.sequence_number),
            EVENT_TYPE_KEY: self.event_type.value,
            OCCURRED_AT_KEY: self.occurred_at.isoformat(),
        }
