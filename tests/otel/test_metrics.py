"""Tests for the metrics middleware."""

import pytest
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from natrix.bus import Message
from natrix.domain.events import EVENT_TYPE_KEY
from natrix.errors import PermanentError, ProjectionError
from natrix.otel import metrics_middleware

pytestmark = pytest.mark.anyio


def points(reader: InMemoryMetricReader, name: str) -> list:
    data = reader.get_metrics_data()
    assert data is not None, "No metrics data available"
    return [
        point
        for resource_metric in data.resource_metrics
        for scope_metric in resource_metric.scope_metrics
        for metric in scope_metric.metrics
        if metric.name == name
        for point in metric.data.data_points
    ]


class TestMetricsMiddleware:
    async def test_records_consumed_message(
        self,
        meter_provider: MeterProvider,
        metric_reader: InMemoryMetricReader,
    ) -> None:
        middleware = metrics_middleware(
            meter_provider=meter_provider, subscription="proj"
        )

        async def handler(msg: Message) -> None:
            pass

        await middleware(handler)(
            Message(payload=b"x", metadata={EVENT_TYPE_KEY: "OrderCreated"})
        )

        [consumed] = points(metric_reader, "messaging.client.consumed.messages")
        assert consumed.value == 1
        assert consumed.attributes["natrix.event_type"] == "OrderCreated"
        assert consumed.attributes["messaging.destination.name"] == "proj"

        [duration] = points(metric_reader, "messaging.process.duration")
        assert duration.count == 1

    async def test_failure_records_cause_type(
        self,
        meter_provider: MeterProvider,
        metric_reader: InMemoryMetricReader,
    ) -> None:
        middleware = metrics_middleware(meter_provider=meter_provider)

        async def handler(msg: Message) -> None:
            raise PermanentError(ProjectionError("no view"))

        with pytest.raises(PermanentError):
            await middleware(handler)(Message(payload=b"x"))

        [duration] = points(metric_reader, "messaging.process.duration")
        assert duration.attributes["error.type"] == "ProjectionError"
        assert points(metric_reader, "messaging.client.consumed.messages") == []

    async def test_counts_redeliveries(
        self,
        meter_provider: MeterProvider,
        metric_reader: InMemoryMetricReader,
    ) -> None:
        middleware = metrics_middleware(meter_provider=meter_provider)

        async def handler(msg: Message) -> None:
            pass

        msg = Message(payload=b"x")
        await middleware(handler)(msg)
        await middleware(handler)(msg.redelivery(2))

        [redelivered] = points(metric_reader, "natrix.redeliveries")
        assert redelivered.value == 1
