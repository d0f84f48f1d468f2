"""OpenTelemetry instrumentation for natrix.

Requires the ``otel`` extra (opentelemetry-api).
"""

from natrix.otel.metrics import metrics_middleware
from natrix.otel.middleware import tracing
from natrix.otel.propagation import extract_context, trace_headers

__all__ = [
    "extract_context",
    "metrics_middleware",
    "trace_headers",
    "tracing",
]
