"""Metrics middleware for event bus subscriptions."""

import time
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import MeterProvider

from natrix.bus.message import Message
from natrix.bus.types import HandlerFunc, Middleware
from natrix.domain.events import EVENT_TYPE_KEY
from natrix.errors import PermanentError


def metrics_middleware(
    meter_provider: MeterProvider | None = None,
    messaging_system: str = "natrix",
    subscription: str | None = None,
) -> Middleware:
    """Create a metrics middleware for event processing.

    Tracks:
    - messaging.process.duration: seconds spent in the handler
    - messaging.client.consumed.messages: Successfully handled deliveries
    - natrix.redeliveries: Deliveries after the first one

    Args:
        meter_provider: Meter provider; the global one when omitted.
        messaging_system: Recorded as messaging.system.
        subscription: Subscription name, used as messaging.destination.name.

    Returns:
        Middleware function.
    """
    provider = meter_provider or metrics.get_meter_provider()
    meter = provider.get_meter("natrix.otel")

    process_duration = meter.create_histogram(
        "messaging.process.duration",
        unit="s",
        description="Seconds spent applying one delivery",
    )
    consumed_messages = meter.create_counter(
        "messaging.client.consumed.messages",
        unit="{message}",
        description="Deliveries handled without error",
    )
    redeliveries = meter.create_counter(
        "natrix.redeliveries",
        unit="{message}",
        description="Number of deliveries that were retries of a failed one",
    )

    def middleware(handler: HandlerFunc) -> HandlerFunc:
        async def wrapper(msg: Message) -> None:
            attributes: dict[str, Any] = {
                "messaging.system": messaging_system,
                "messaging.operation.name": "process",
            }
            if subscription:
                attributes["messaging.destination.name"] = subscription
            event_type = msg.metadata.get(EVENT_TYPE_KEY)
            if event_type:
                attributes["natrix.event_type"] = event_type

            if msg.delivery_count > 1:
                redeliveries.add(1, attributes)

            start = time.perf_counter()
            try:
                await handler(msg)
                consumed_messages.add(1, attributes)
            except Exception as e:
                cause = e.cause if isinstance(e, PermanentError) else e
                attributes["error.type"] = type(cause).__name__
                raise
            finally:
                duration = time.perf_counter() - start
                process_duration.record(duration, attributes)

        return wrapper

    return middleware
