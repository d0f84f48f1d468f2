"""Tests for graceful_shutdown."""

import signal

import anyio
import pytest

from natrix import Natrix, NatrixConfig, graceful_shutdown
from natrix.outbox import DispatcherConfig

pytestmark = pytest.mark.anyio

TIMEOUT_SECONDS = 2


class RecordingCloseable:
    def __init__(self, log: list[str], name: str) -> None:
        self.log = log
        self.name = name

    async def close(self) -> None:
        self.log.append(self.name)


class TestGracefulShutdown:
    async def test_normal_exit_does_not_close(self) -> None:
        log: list[str] = []
        async with graceful_shutdown(RecordingCloseable(log, "a")):
            await anyio.sleep(0.01)
        assert log == []

    async def test_signal_closes_in_order(self) -> None:
        log: list[str] = []
        first = RecordingCloseable(log, "first")
        second = RecordingCloseable(log, "second")

        async with graceful_shutdown(first, second):
            handler = signal.getsignal(signal.SIGTERM)
            assert callable(handler)
            handler(signal.SIGTERM, None)

            with anyio.fail_after(TIMEOUT_SECONDS):
                while len(log) < 2:  # noqa: PLR2004
                    await anyio.sleep(0.01)

        assert log == ["first", "second"]

    async def test_close_error_does_not_stop_others(self) -> None:
        log: list[str] = []

        class Broken:
            async def close(self) -> None:
                raise RuntimeError("broken")

        async with graceful_shutdown(Broken(), RecordingCloseable(log, "after")):
            handler = signal.getsignal(signal.SIGINT)
            assert callable(handler)
            handler(signal.SIGINT, None)

        assert log == ["after"]

    async def test_restores_original_handlers(self) -> None:
        original_sigterm = signal.getsignal(signal.SIGTERM)
        original_sigint = signal.getsignal(signal.SIGINT)

        async with graceful_shutdown():
            assert signal.getsignal(signal.SIGTERM) is not original_sigterm

        assert signal.getsignal(signal.SIGTERM) == original_sigterm
        assert signal.getsignal(signal.SIGINT) == original_sigint

    async def test_custom_signals(self) -> None:
        original = signal.getsignal(signal.SIGUSR1)
        async with graceful_shutdown(signals=(signal.SIGUSR1,)):
            assert signal.getsignal(signal.SIGUSR1) is not original
        assert signal.getsignal(signal.SIGUSR1) == original

    async def test_stops_application(self) -> None:
        config = NatrixConfig(dispatcher=DispatcherConfig(poll_interval=0.05))
        async with Natrix.in_memory(config) as app:
            async with graceful_shutdown(app):
                handler = signal.getsignal(signal.SIGTERM)
                assert callable(handler)
                handler(signal.SIGTERM, None)
                with anyio.fail_after(TIMEOUT_SECONDS):
                    await app.wait_closed()
