"""Trace context propagation via event and message metadata."""

from opentelemetry import propagate
from opentelemetry.context import Context

from natrix.bus.message import Message


def trace_headers() -> dict[str, str]:
    """Current trace context as headers, empty when no span is active.

    Pass as ``event_metadata`` to CommandHandler so the context recorded at
    command time travels through the outbox to the projection.
    """
    carrier: dict[str, str] = {}
    propagate.inject(carrier)
    return carrier


def extract_context(message: Message) -> Context:
    """Extract trace context from message metadata.

    Returns the extracted Context, or the current context if none found.
    """
    return propagate.extract(message.metadata)
