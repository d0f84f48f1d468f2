"""Query handler: read-only access to the query store."""

from natrix.domain.views import OrderFilter, OrderView
from natrix.errors import NotFoundError
from natrix.projection.engine import VIEW_PREFIX, load_view
from natrix.store.base import Store


class QueryHandler:
    """Serves read models. Never touches the command store or the bus.

    Right after a command commits, its aggregate may still be missing or
    stale here until the projection catches up.
    """

    def __init__(self, store: Store) -> None:
        self._store = store

    async def get(self, aggregate_id: int) -> OrderView:
        """Return the view of one order.

        Raises:
            NotFoundError: No view exists (yet, or any more).
        """
        async with self._store.begin() as txn:
            view = await load_view(txn, aggregate_id)
        if view is None:
            msg = f"order {aggregate_id} not found"
            raise NotFoundError(msg)
        return view

    async def list(
        self, filter: OrderFilter | None = None  # noqa: A002
    ) -> list[OrderView]:
        """Return views matching ``filter``, ordered by id."""
        criteria = filter or OrderFilter()
        async with self._store.begin() as txn:
            rows = await txn.scan(VIEW_PREFIX)

        views = sorted(
            (OrderView.model_validate_json(value) for _, value in rows),
            key=lambda view: view.id,
        )
        matching = [view for view in views if criteria.matches(view)]
        if criteria.limit is not None:
            matching = matching[: criteria.limit]
        return matching
