"""OpenTelemetry spans for lightweight performance profiling."""

from __future__ import annotations

import functools

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

SERVICE_NAME = "onnx-restore"
DEFAULT_OTLP_ENDPOINT = "http://localhost:4318/v1/traces"

_provider = None


def init_tracing(endpoint: str = DEFAULT_OTLP_ENDPOINT) -> None:
    """Configure OpenTelemetry to export spans to an OTLP/HTTP endpoint."""
    global _provider
    if _provider is not None:
        return

    resource = Resource.create({"service.name": SERVICE_NAME})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    _provider = provider


def shutdown_tracing() -> None:
    global _provider
    if _provider is not None:
        _provider.shutdown()
        _provider = None


def traced(func):
    """Decorator that wraps a function call in a span named after the function."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        tracer = trace.get_tracer(SERVICE_NAME)
        with tracer.start_as_current_span(func.__qualname__):
            return func(*args, **kwargs)

    return wrapper
