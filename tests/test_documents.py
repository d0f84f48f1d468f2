"""Tests for the structured document surface."""

import pytest

from natrix.documents import get_document, list_document, submit_document
from natrix.domain import DomainEvent
from natrix.domain.events import OrderCreated
from natrix.handlers import CommandHandler, QueryHandler
from natrix.projection import ProjectionEngine
from natrix.store import InMemoryStore

pytestmark = pytest.mark.anyio


@pytest.fixture
def commands() -> CommandHandler:
    return CommandHandler(InMemoryStore())


@pytest.fixture
async def queries() -> QueryHandler:
    store = InMemoryStore()
    await ProjectionEngine(store).apply(
        DomainEvent.record(
            1, 1, OrderCreated(product="widget", quantity=2, price=9.99)
        )
    )
    return QueryHandler(store)


class TestSubmitDocument:
    async def test_create(self, commands: CommandHandler) -> None:
        result = await submit_document(
            commands,
            {
                "aggregate_type": "order",
                "operation": "create",
                "fields": {"product": "widget", "quantity": 2, "price": 9.99},
            },
        )
        assert result == {"aggregate_id": 1, "version": 1}

    async def test_validation_error(self, commands: CommandHandler) -> None:
        result = await submit_document(
            commands,
            {
                "aggregate_type": "order",
                "operation": "create",
                "fields": {"product": "widget", "quantity": -1, "price": 9.99},
            },
        )
        assert result["error"]["kind"] == "validation"
        assert "quantity" in result["error"]["message"]

    async def test_unknown_operation(self, commands: CommandHandler) -> None:
        result = await submit_document(
            commands, {"aggregate_type": "order", "operation": "ship"}
        )
        assert result["error"]["kind"] == "validation"

    async def test_conflict(self, commands: CommandHandler) -> None:
        await submit_document(
            commands,
            {
                "aggregate_type": "order",
                "operation": "create",
                "fields": {"product": "widget", "quantity": 2, "price": 9.99},
            },
        )
        result = await submit_document(
            commands,
            {
                "aggregate_type": "order",
                "operation": "delete",
                "fields": {"aggregate_id": 1, "expected_version": 7},
            },
        )
        assert result["error"]["kind"] == "conflict"

    async def test_not_found(self, commands: CommandHandler) -> None:
        result = await submit_document(
            commands,
            {
                "aggregate_type": "order",
                "operation": "cancel",
                "fields": {"aggregate_id": 5, "expected_version": 1},
            },
        )
        assert result["error"]["kind"] == "not_found"


class TestQueryDocuments:
    async def test_get(self, queries: QueryHandler) -> None:
        document = await get_document(queries, 1)
        assert document == {
            "id": 1,
            "product": "widget",
            "quantity": 2,
            "price": 9.99,
            "status": "active",
            "version": 1,
            "cancel_reason": None,
        }

    async def test_get_missing(self, queries: QueryHandler) -> None:
        document = await get_document(queries, 2)
        assert document["error"]["kind"] == "not_found"

    async def test_list(self, queries: QueryHandler) -> None:
        document = await list_document(queries, {"product": "widget"})
        assert [item["id"] for item in document["items"]] == [1]

    async def test_list_invalid_filter(self, queries: QueryHandler) -> None:
        document = await list_document(queries, {"limit": 0})
        assert document["error"]["kind"] == "validation"

    async def test_list_storage_error(self) -> None:
        store = InMemoryStore()
        await store.close()

        document = await list_document(QueryHandler(store), {})

        assert document == {
            "error": {"kind": "storage", "message": "Store is closed"}
        }
