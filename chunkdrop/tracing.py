from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from chunkdrop.config import Settings

_instrumented_apps: set[int] = set()


def setup_tracing(app: FastAPI, config: Settings) -> bool:
    """Install the OTLP exporter once per app. Returns True when tracing is on."""
    if not config.tracing_enabled:
        return False
    if id(app) in _instrumented_apps:
        return True

    provider = TracerProvider(resource=Resource.create({SERVICE_NAME: config.tracing_service_name}))
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otlp_endpoint, insecure=config.otlp_insecure))
    )
    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
    _instrumented_apps.add(id(app))
    return True
