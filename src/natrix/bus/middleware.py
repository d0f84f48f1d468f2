"""Built-in middlewares for subscription handlers."""

import logging

import anyio

from natrix.bus.message import Message
from natrix.bus.types import HandlerFunc, Middleware
from natrix.domain.events import AGGREGATE_ID_KEY, SEQUENCE_NUMBER_KEY
from natrix.errors import ProjectionGapError


def recoverer(
    logger: logging.Logger | None = None,
) -> Middleware:
    """Middleware that logs handler failures before they are retried.

    Gaps are logged at info level: they are expected while a predecessor
    is still on its way.
    """
    log = logger or logging.getLogger("natrix.bus")

    def middleware(next_handler: HandlerFunc) -> HandlerFunc:
        async def handler(msg: Message) -> None:
            try:
                await next_handler(msg)
            except ProjectionGapError as e:
                log.info("Holding message %s: %s", msg.uuid, e)
                raise
            except Exception:
                log.exception(
                    "Handler failed for message %s (aggregate %s, seq %s, delivery %d)",
                    msg.uuid,
                    msg.metadata.get(AGGREGATE_ID_KEY),
                    msg.metadata.get(SEQUENCE_NUMBER_KEY),
                    msg.delivery_count,
                )
                raise

        return handler

    return middleware


def timeout(seconds: float) -> Middleware:
    """Middleware that cancels handler if it takes too long."""

    def middleware(next_handler: HandlerFunc) -> HandlerFunc:
        async def handler(msg: Message) -> None:
            with anyio.fail_after(seconds):
                await next_handler(msg)

        return handler

    return middleware
