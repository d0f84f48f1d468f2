"""Structured document surface for commands and queries.

Adapters such as an HTTP layer pass plain mappings in and get JSON-ready
dicts back; errors become ``{"error": {"kind": ..., "message": ...}}``.
"""

from collections.abc import Mapping
from typing import Any

import pydantic

from natrix.domain.commands import parse_command
from natrix.domain.views import OrderFilter
from natrix.errors import NatrixError, ValidationError
from natrix.handlers.command import CommandHandler
from natrix.handlers.query import QueryHandler


def error_document(error: NatrixError) -> dict[str, Any]:
    return {"error": error.to_dict()}


async def submit_document(
    handler: CommandHandler, document: Mapping[str, Any]
) -> dict[str, Any]:
    """Submit ``{"aggregate_type", "operation", "fields"}``."""
    try:
        command = parse_command(document)
        result = await handler.submit(command)
    except NatrixError as e:
        return error_document(e)
    return {"aggregate_id": result.aggregate_id, "version": result.version}


async def get_document(handler: QueryHandler, aggregate_id: int) -> dict[str, Any]:
    try:
        view = await handler.get(aggregate_id)
    except NatrixError as e:
        return error_document(e)
    return view.model_dump(mode="json")


async def list_document(
    handler: QueryHandler, filter: Mapping[str, Any] | None = None  # noqa: A002
) -> dict[str, Any]:
    try:
        criteria = OrderFilter.model_validate(dict(filter or {}))
    except pydantic.ValidationError as e:
        return error_document(ValidationError(f"Invalid filter: {e}"))
    try:
        views = await handler.list(criteria)
    except NatrixError as e:
        return error_document(e)
    return {"items": [view.model_dump(mode="json") for view in views]}
