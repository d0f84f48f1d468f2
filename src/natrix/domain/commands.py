"""Commands accepted by the command handler."""

from collections.abc import Mapping
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict

from natrix.errors import ValidationError


class CreateOrder(BaseModel):
    model_config = ConfigDict(frozen=True)

    product: str
    quantity: int
    price: float


class UpdateOrder(BaseModel):
    model_config = ConfigDict(frozen=True)

    aggregate_id: int
    expected_version: int
    product: str | None = None
    quantity: int | None = None
    price: float | None = None


class CancelOrder(BaseModel):
    model_config = ConfigDict(frozen=True)

    aggregate_id: int
    expected_version: int
    reason: str | None = None


class DeleteOrder(BaseModel):
    model_config = ConfigDict(frozen=True)

    aggregate_id: int
    expected_version: int


Command = CreateOrder | UpdateOrder | CancelOrder | DeleteOrder

COMMANDS: dict[tuple[str, str], type[BaseModel]] = {
    ("order", "create"): CreateOrder,
    ("order", "update"): UpdateOrder,
    ("order", "cancel"): CancelOrder,
    ("order", "delete"): DeleteOrder,
}


def parse_command(document: Mapping[str, Any]) -> Command:
    """Build a command from ``{"aggregate_type", "operation", "fields"}``.

    Raises:
        ValidationError: Unknown aggregate type or operation, or fields that
            do not fit the command.
    """
    aggregate_type = document.get("aggregate_type")
    operation = document.get("operation")
    command_type = COMMANDS.get((str(aggregate_type), str(operation)))
    if command_type is None:
        msg = f"Unknown command {aggregate_type!r}/{operation!r}"
        raise ValidationError(msg)

    fields = document.get("fields") or {}
    if not isinstance(fields, Mapping):
        msg = "Command fields must be an object"
        raise ValidationError(msg)

    try:
        return command_type.model_validate(dict(fields))  # type: ignore[return-value]
    except pydantic.ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(f"Invalid {operation} command: {details}") from e
