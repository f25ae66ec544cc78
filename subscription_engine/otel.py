from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import Span, Status, StatusCode

from subscription_engine.context import get_correlation_id
from subscription_engine.core.config import Settings, get_settings
from subscription_engine.middleware.rate_limit import limited_operation

SERVICE_NAME = "subscription-engine"
GATEWAY_TRACER = "subscription_engine.gateway"
MAX_STATUS_DESCRIPTION = 200

# One provider per process; exporters are attached to it at most once.
_provider: TracerProvider | None = None
_exporters_attached = False


def _provider_for(service_name: str, version: str) -> TracerProvider:
    global _provider
    if _provider is None:
        _provider = TracerProvider(resource=Resource.create({"service.name": service_name, "service.version": version}))
        trace.set_tracer_provider(_provider)
    return _provider


def _span_processors(settings: Settings) -> list[SpanProcessor]:
    processors: list[SpanProcessor] = []
    if settings.otel_exporter_otlp_endpoint:
        processors.append(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    if settings.otel_console_exporter:
        processors.append(SimpleSpanProcessor(ConsoleSpanExporter()))
    return processors


def setup_otel(settings: Settings | None = None, service_name: str = SERVICE_NAME) -> TracerProvider | None:
    """Create the tracer provider and attach the exporters named in settings.

    Returns None when tracing is disabled. Exporters are attached only on the
    first enabled call.
    """
    global _exporters_attached
    settings = settings or get_settings()
    if not settings.otel_enabled:
        return None

    provider = _provider_for(service_name, settings.app_version)
    if not _exporters_attached:
        for processor in _span_processors(settings):
            provider.add_span_processor(processor)
        _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str = SERVICE_NAME) -> InMemorySpanExporter:
    provider = _provider_for(service_name, get_settings().app_version)
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


@contextmanager
def gateway_span(operation: str, **attributes: Any) -> Iterator[Span]:
    """Span around a single payment gateway call; failures are recorded on the span and re-raised."""
    tracer = trace.get_tracer(GATEWAY_TRACER)
    with tracer.start_as_current_span(
        f"gateway.{operation}", record_exception=False, set_status_on_exception=False
    ) as span:
        span.set_attribute("gateway.operation", operation)
        correlation_id = get_correlation_id()
        if correlation_id:
            span.set_attribute("correlation_id", correlation_id)
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"gateway.{key}", value)
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)[:MAX_STATUS_DESCRIPTION]))
            raise


def get_fastapi_server_request_hook() -> Callable[[Span | None, dict[str, Any]], None]:
    """Tags server spans with the caller's correlation id and the throttled operation, if any.

    The hook runs before the correlation middleware, so it reads the raw header.
    """

    def server_request_hook(span: Span | None, scope: dict[str, Any]) -> None:
        if span is None or not span.is_recording():
            return
        for name, value in scope.get("headers", []):
            if name == b"x-correlation-id" and value:
                span.set_attribute("correlation_id", value.decode("latin-1"))
                break
        operation = limited_operation(scope.get("method", ""), scope.get("path", ""))
        if operation is not None:
            span.set_attribute("subscription.operation", operation)

    return server_request_hook
