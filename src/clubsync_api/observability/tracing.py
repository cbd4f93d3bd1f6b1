"""OpenTelemetry wiring for the API and the CRM reconciliation spans."""

from __future__ import annotations

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.semconv.resource import ResourceAttributes

from clubsync_api.core.settings import Settings, settings

_provider: TracerProvider | None = None


def build_span_exporter(config: Settings = settings) -> SpanExporter:
    """OTLP over HTTP when an endpoint is configured, console output otherwise."""
    if config.otel_exporter_otlp_endpoint:
        return OTLPSpanExporter(
            endpoint=config.otel_exporter_otlp_endpoint,
            headers=config.otel_exporter_otlp_headers or None,
        )
    return ConsoleSpanExporter()


def configure_tracing(app: FastAPI, *, service_version: str, config: Settings = settings) -> None:
    """Install the process tracer provider once and instrument ``app``."""

    global _provider

    if _provider is None:
        resource = Resource.create(
            {
                ResourceAttributes.SERVICE_NAME: config.otel_service_name,
                ResourceAttributes.SERVICE_VERSION: service_version,
                ResourceAttributes.DEPLOYMENT_ENVIRONMENT: config.environment,
            }
        )
        _provider = TracerProvider(resource=resource)
        _provider.add_span_processor(BatchSpanProcessor(build_span_exporter(config)))
        trace.set_tracer_provider(_provider)
        LoggingInstrumentor().instrument(set_logging_format=False)

    FastAPIInstrumentor.instrument_app(app, tracer_provider=_provider)


def get_tracer(name: str) -> trace.Tracer:
    """Return a tracer; spans are no-ops until ``configure_tracing`` installs a provider."""

    return trace.get_tracer(name)


__all__ = ["build_span_exporter", "configure_tracing", "get_tracer"]
