"""Configuration dataclass for the event bus."""

from dataclasses import dataclass, field

from natrix.retry import RetryPolicy


@dataclass
class BusConfig:
    """Configuration for EventBus."""

    workers: int = 4
    """Partitions (and worker tasks) per subscription."""

    buffer_size: int = 100
    """Messages each partition buffers before publish blocks."""

    publish_timeout: float = 5.0
    """Seconds publish may wait on a full partition before DeliveryError."""

    redelivery: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(max_attempts=8, delay=0.05, max_delay=2.0)
    )
    """Backoff between redeliveries; after max_attempts the event is dead-lettered."""

    close_timeout_s: float = 5.0
    """Seconds close waits for in-progress deliveries before cancelling them."""
