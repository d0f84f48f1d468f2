"""Exponential backoff shared by the store, outbox and bus."""

import logging
import random
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import TypeVar

import anyio

from natrix.errors import PermanentError

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_DELAY = 0.1
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_MAX_DELAY = 5.0
DEFAULT_JITTER = 0.1

logger = logging.getLogger("natrix.retry")


@dataclass
class RetryPolicy:
    """Capped exponential backoff."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    """Total attempts including the first one."""

    delay: float = DEFAULT_RETRY_DELAY
    """Seconds to wait before the second attempt."""

    backoff: float = DEFAULT_BACKOFF_MULTIPLIER
    """Multiplier applied to the delay after each failed attempt."""

    max_delay: float = DEFAULT_MAX_DELAY
    """Upper bound for a single delay."""

    jitter: float = DEFAULT_JITTER
    """Random jitter factor (0.1 = ±10% randomization)."""

    def delay_for(self, retry: int) -> float:
        """Wait before the ``retry``-th retry (1-based), capped and jittered."""
        base = self.delay * self.backoff ** max(retry - 1, 0)
        return self._add_jitter(min(base, self.max_delay))

    def delays(self) -> Iterator[float]:
        """Yield the wait before each retry, ``max_attempts - 1`` values."""
        for retry in range(1, self.max_attempts):
            yield self.delay_for(retry)

    def _add_jitter(self, base_delay: float) -> float:
        if self.jitter <= 0:
            return base_delay
        jitter_range = base_delay * self.jitter
        return max(0.0, base_delay + random.uniform(-jitter_range, jitter_range))


async def retry_async(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: tuple[type[Exception], ...],
    on_retry: Callable[[int, Exception], None] | None = None,
) -> T:
    """Call ``func`` until it succeeds or the policy is exhausted.

    Only exceptions in ``retry_on`` are retried; anything else, and
    PermanentError, propagates immediately. The last failure is re-raised
    once attempts run out.
    """
    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        try:
            return await func()
        except PermanentError:
            raise
        except retry_on as e:
            wait = next(delays, None)
            if wait is None:
                raise
            if on_retry is not None:
                on_retry(attempt, e)
            else:
                logger.debug(
                    "Attempt %d failed (%s), retrying in %.3fs", attempt, e, wait
                )
            await anyio.sleep(wait)
