"""OpenTelemetry setup for the API and worker apps."""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from paynotify.common.config import CommonSettings


def setup_tracing(settings: CommonSettings) -> TracerProvider | None:
    """Register an OTLP HTTP tracer provider, or do nothing when tracing is off."""

    if not settings.otel_enabled:
        return None
    provider = TracerProvider(resource=Resource.create({"service.name": settings.service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)
    return provider


def instrument_app(app: FastAPI, settings: CommonSettings) -> None:
    if settings.otel_enabled:
        FastAPIInstrumentor.instrument_app(app)


def shutdown_tracing(provider: TracerProvider | None) -> None:
    """Flush pending spans on process exit."""

    if provider is not None:
        provider.shutdown()
