"""Signal-driven shutdown for long-running natrix processes."""

import logging
import signal
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from types import FrameType
from typing import Protocol

import anyio

logger = logging.getLogger("natrix.shutdown")

POLL_INTERVAL = 0.02


class Closeable(Protocol):
    async def close(self) -> None: ...


@asynccontextmanager
async def graceful_shutdown(
    *closeables: Closeable,
    signals: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM),
) -> AsyncIterator[None]:
    """Close ``closeables`` in order when one of ``signals`` arrives.

    Original handlers are restored on exit. A normal exit from the block
    does not close anything.

    Example:
        async with Natrix(store, store) as app, graceful_shutdown(app):
            await app.wait_closed()
    """
    requested: list[int] = []
    done = anyio.Event()

    def handler(signum: int, frame: FrameType | None) -> None:
        logger.info("Received signal %s, shutting down", signal.Signals(signum).name)
        requested.append(signum)

    async def closer() -> None:
        # Signal handlers run outside the event loop; poll instead of waking it.
        while not requested:
            await anyio.sleep(POLL_INTERVAL)
        for closeable in closeables:
            try:
                await closeable.close()
            except Exception:
                logger.exception("Error closing %r", closeable)
        done.set()

    originals = {sig: signal.getsignal(sig) for sig in signals}
    for sig in signals:
        signal.signal(sig, handler)

    try:
        async with anyio.create_task_group() as tg:
            tg.start_soon(closer)
            try:
                yield
            finally:
                if requested:
                    with anyio.CancelScope(shield=True):
                        await done.wait()
                tg.cancel_scope.cancel()
    finally:
        for sig, original in originals.items():
            signal.signal(sig, original)
