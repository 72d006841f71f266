"""
OpenTelemetry Tracing Setup
===========================
Configures tracing for pipeline runs and model calls.

Spans are exported over OTLP/HTTP when ``ENABLE_TRACING=true``; otherwise the
tracer is the OpenTelemetry no-op tracer and every helper here is safe to call.
"""

import atexit
import json
from contextlib import contextmanager
from typing import Any, Iterator, Mapping, Optional

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource, SERVICE_NAME
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from chorus.config import TRACING

SERVICE_NAME_VALUE = TRACING.SERVICE_NAME
OTLP_ENDPOINT = TRACING.OTLP_ENDPOINT
ENABLE_TRACING = TRACING.ENABLED

# Track provider for cleanup
_provider: Optional[TracerProvider] = None


def _cleanup_tracing() -> None:
    """Shutdown the tracer provider to flush pending spans."""
    global _provider
    if _provider is not None:
        try:
            _provider.shutdown()
        except Exception:
            pass  # Best effort cleanup


def setup_tracing(service_name: str = SERVICE_NAME_VALUE) -> trace.Tracer:
    """
    Initialize OpenTelemetry tracing with OTLP export.

    Args:
        service_name: Name of the service for trace identification

    Returns:
        Configured tracer instance
    """
    global _provider

    resource = Resource.create({
        SERVICE_NAME: service_name,
    })

    _provider = TracerProvider(resource=resource)
    _provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=OTLP_ENDPOINT)))
    trace.set_tracer_provider(_provider)

    # Model backends talk over httpx
    HTTPXClientInstrumentor().instrument()

    atexit.register(_cleanup_tracing)

    return trace.get_tracer(service_name)


def get_tracer(name: str = SERVICE_NAME_VALUE) -> trace.Tracer:
    """Get a tracer instance for creating spans."""
    return trace.get_tracer(name)


def safe_set_span_attributes(span: Any, attributes: Mapping[str, Any]) -> None:
    """Best-effort attribute setter.

    This helper is safe to call when tracing is disabled, when the active span is
    a no-op, or when values are not directly serializable.
    """

    if span is None:
        return

    setter = getattr(span, "set_attribute", None)
    if not callable(setter):
        return

    for key, value in attributes.items():
        if not isinstance(key, str) or not key:
            continue

        try:
            v = value
            if isinstance(v, str):
                setter(key, v[:2048])
                continue

            if isinstance(v, (bool, int, float)):
                setter(key, v)
                continue

            if v is None:
                continue

            if isinstance(v, (list, tuple)):
                setter(key, [str(x)[:256] for x in list(v)[:25]])
                continue

            if isinstance(v, dict):
                try:
                    setter(key, json.dumps(v, sort_keys=True, default=str)[:2048])
                except (TypeError, ValueError):
                    setter(key, str(v)[:2048])
                continue

            setter(key, str(v)[:2048])
        except Exception:
            # Never break a run because of tracing.
            continue


_tracer = None


def init_tracing() -> trace.Tracer:
    """
    Initialize tracing if not already done.

    Returns:
        The global tracer instance (or NoOp tracer if disabled)
    """
    global _tracer
    if _tracer is None:
        if ENABLE_TRACING:
            _tracer = setup_tracing()
        else:
            _tracer = trace.get_tracer(SERVICE_NAME_VALUE)
    return _tracer


@contextmanager
def traced_span(name: str, attributes: Optional[Mapping[str, Any]] = None) -> Iterator[Any]:
    """Open a span on the process tracer and attach attributes safely."""
    tracer = init_tracing()
    with tracer.start_as_current_span(name) as span:
        if attributes:
            safe_set_span_attributes(span, attributes)
        yield span
