from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from audiobook_upload.config import settings

_tracing_initialized = False


def setup_tracing(app) -> None:
    global _tracing_initialized
    if _tracing_initialized or not settings.tracing_enabled:
        return

    resource = Resource.create({SERVICE_NAME: settings.tracing_service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure))
    )

    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
    _tracing_initialized = True


def tracer():
    return trace.get_tracer("audiobook_upload")
