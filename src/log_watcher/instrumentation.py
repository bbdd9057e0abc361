"""
OpenTelemetry instrumentation for the watcher
"""
from typing import Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.requests import RequestsInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = structlog.get_logger()


def setup_opentelemetry(
    service_name: str,
    otlp_endpoint: str = "http://localhost:4317",
    enabled: bool = True
) -> Optional[TracerProvider]:
    """
    Setup OpenTelemetry tracing for the watcher

    Args:
        service_name: Name reported on every span
        otlp_endpoint: OTLP collector endpoint
        enabled: Whether to enable tracing
    """
    if not enabled:
        logger.info("OpenTelemetry disabled")
        return None

    resource = Resource(attributes={
        SERVICE_NAME: service_name
    })
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True))
    )
    trace.set_tracer_provider(provider)

    # Slack and webhook deliveries go through requests
    RequestsInstrumentor().instrument()

    logger.info("OpenTelemetry initialized", service=service_name, endpoint=otlp_endpoint)
    return provider
