import structlog
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.semconv.resource import ResourceAttributes
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from costsync.shared.core.config import get_settings

logger = structlog.get_logger()


def setup_tracing(app=None):
    """
    Sets up OpenTelemetry tracing for the API and workers.
    """
    settings = get_settings()

    if settings.TESTING:
        logger.info("setup_tracing_skipped_in_test")
        return

    resource = Resource(attributes={
        ResourceAttributes.SERVICE_NAME: "costsync-api",
        "env": settings.ENVIRONMENT
    })

    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)

    otlp_endpoint = settings.OTEL_EXPORTER_OTLP_ENDPOINT
    if otlp_endpoint:
        insecure = settings.OTEL_EXPORTER_OTLP_INSECURE
        logger.info("setup_tracing_otlp", endpoint=otlp_endpoint, insecure=insecure)
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=insecure)))
    else:
        logger.info("setup_tracing_console")
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    if app:
        FastAPIInstrumentor.instrument_app(app)
        logger.info("fastapi_instrumented")


def get_tracer(name: str):
    """Returns a tracer instance for manual instrumentation."""
    return trace.get_tracer(name)
