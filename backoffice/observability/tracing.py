# ==== OPENTELEMETRY TRACING CONFIGURATION ==== #

"""
OpenTelemetry tracing configuration for the back office billing core.

Spans are always created through ``get_tracer``; export only happens when an
OTLP endpoint is configured, so local runs and tests work without an APM.
"""

import os
from typing import Dict, Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor

from backoffice.observability.logging import get_logger


logger = get_logger(__name__)


# ==== TRACING INITIALIZATION ==== #

def init_tracing(service_name: str) -> None:
    """
    Initialize OpenTelemetry tracing with an OTLP exporter.

    Sets up the tracer provider with resource attributes parsed from the
    environment and auto-instruments SQLAlchemy and Redis.

    Args:
        service_name (str): Name of the service for tracing identification
    """
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    headers = os.getenv("OTEL_EXPORTER_OTLP_HEADERS")

    # ⚠️ Allow local runs without SaaS APM
    if not endpoint:
        return

    # --► RESOURCE ATTRIBUTES CONFIGURATION
    resource_attrs = _parse_resource_attributes(
        os.getenv("OTEL_RESOURCE_ATTRIBUTES", "")
    )
    resource_attrs["service.name"] = os.getenv("OTEL_SERVICE_NAME", service_name)

    # --► TRACER PROVIDER SETUP
    provider = TracerProvider(resource=Resource.create(resource_attrs))
    exporter = OTLPSpanExporter(
        endpoint=endpoint,
        headers=_parse_headers(headers)
    )

    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    _setup_auto_instrumentation()


def _parse_headers(headers_str: str | None) -> Dict[str, str]:
    """Parse OTLP headers from comma-separated key=value pairs."""
    headers: Dict[str, str] = {}
    if not headers_str:
        return headers

    for part in headers_str.split(","):
        if "=" in part:
            key, value = part.split("=", 1)
            headers[key.strip()] = value.strip()

    return headers


def _parse_resource_attributes(attrs_str: str) -> Dict[str, Any]:
    """Parse OTEL resource attributes from comma-separated key=value pairs."""
    attrs: Dict[str, Any] = {}
    if not attrs_str:
        return attrs

    for part in filter(None, map(str.strip, attrs_str.split(","))):
        if "=" in part:
            key, value = part.split("=", 1)
            attrs[key] = value

    return attrs


def _setup_auto_instrumentation() -> None:
    """Setup automatic instrumentation for the database and lock backends."""
    try:
        SQLAlchemyInstrumentor().instrument()
        RedisInstrumentor().instrument()
    except Exception as e:
        # Don't fail startup if instrumentation fails
        logger.warning(f"Failed to setup auto-instrumentation: {e}")


def get_tracer(name: str) -> trace.Tracer:
    """Get a tracer instance for the given module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Tracer instance
    """
    return trace.get_tracer(name)
