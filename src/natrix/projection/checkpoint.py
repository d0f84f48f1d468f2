"""Per-aggregate projection checkpoints."""

from datetime import UTC, datetime
from uuid import UUID

from pydantic import BaseModel, Field

from natrix.store.base import Transaction

CHECKPOINT_PREFIX = "checkpoint/order/"


class ProjectionCheckpoint(BaseModel):
    """Last event applied to an aggregate's read model."""

    aggregate_id: int
    sequence_number: int = 0
    event_id: UUID | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


def checkpoint_key(aggregate_id: int) -> str:
    return f"{CHECKPOINT_PREFIX}{aggregate_id}"


async def load_checkpoint(txn: Transaction, aggregate_id: int) -> ProjectionCheckpoint:
    raw = await txn.get(checkpoint_key(aggregate_id))
    if raw is None:
        return ProjectionCheckpoint(aggregate_id=aggregate_id)
    return ProjectionCheckpoint.model_validate_json(raw)


async def save_checkpoint(txn: Transaction, checkpoint: ProjectionCheckpoint) -> None:
    await txn.put(
        checkpoint_key(checkpoint.aggregate_id),
        checkpoint.model_dump_json().encode(),
    )
