"""In-process event bus."""

from natrix.bus.config import BusConfig
from natrix.bus.dead_letter import DeadLetter, DeadLetterQueue
from natrix.bus.event_bus import EventBus, Subscription, partition_for
from natrix.bus.message import Message
from natrix.bus.middleware import recoverer, timeout
from natrix.bus.types import HandlerFunc, Middleware

__all__ = [
    "BusConfig",
    "DeadLetter",
    "DeadLetterQueue",
    "EventBus",
    "HandlerFunc",
    "Message",
    "Middleware",
    "Subscription",
    "partition_for",
    "recoverer",
    "timeout",
]
