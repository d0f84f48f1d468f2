"""Tracing middleware for event bus subscriptions."""

from opentelemetry import trace
from opentelemetry.trace import SpanKind, Status, StatusCode, TracerProvider

from natrix.bus.message import Message
from natrix.bus.types import HandlerFunc, Middleware
from natrix.domain.events import (
    AGGREGATE_ID_KEY,
    EVENT_TYPE_KEY,
    SEQUENCE_NUMBER_KEY,
)
from natrix.errors import ProjectionGapError
from natrix.otel.propagation import extract_context


def tracing(
    tracer_provider: TracerProvider | None = None,
    messaging_system: str = "natrix",
    subscription: str | None = None,
) -> Middleware:
    """Middleware that creates a span per delivery.

    The parent is the context recorded when the command was accepted, so a
    projection shows up in the same trace as the command that caused it.

    Args:
        tracer_provider: Tracer provider; the global one when omitted.
        messaging_system: Recorded as messaging.system.
        subscription: Subscription name, used as messaging.destination.name.

    Example:
        bus.subscribe(engine.handle, name="projection", middlewares=[tracing()])
    """
    provider = tracer_provider or trace.get_tracer_provider()
    tracer = provider.get_tracer("natrix.otel")

    def middleware(next_handler: HandlerFunc) -> HandlerFunc:
        async def handler(msg: Message) -> None:
            parent_ctx = extract_context(msg)

            attributes: dict[str, str | int] = {
                "messaging.system": messaging_system,
                "messaging.operation.type": "process",
                "messaging.operation.name": "process",
                "messaging.message.id": str(msg.uuid),
                "natrix.delivery_count": msg.delivery_count,
            }
            for key in (AGGREGATE_ID_KEY, SEQUENCE_NUMBER_KEY, EVENT_TYPE_KEY):
                if key in msg.metadata:
                    attributes[f"natrix.{key}"] = msg.metadata[key]
            if subscription:
                attributes["messaging.destination.name"] = subscription

            event_type = msg.metadata.get(EVENT_TYPE_KEY)
            span_name = f"process {event_type}" if event_type else "process"

            with tracer.start_as_current_span(
                span_name,
                context=parent_ctx,
                kind=SpanKind.CONSUMER,
                attributes=attributes,
                record_exception=False,
                set_status_on_exception=False,
            ) as span:
                try:
                    await next_handler(msg)
                    span.set_status(Status(StatusCode.OK))
                except ProjectionGapError as e:
                    # Expected while waiting for a predecessor; not an error.
                    span.add_event("projection.gap", {"natrix.expected": e.expected})
                    raise
                except Exception as e:
                    span.record_exception(e)
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.set_attribute("error.type", type(e).__name__)
                    raise

        return handler

    return middleware
