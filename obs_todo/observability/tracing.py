from __future__ import annotations

from dataclasses import dataclass

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import format_span_id, format_trace_id

from obs_todo.config import Settings


TRACER_NAME = "obs_todo"


@dataclass(frozen=True)
class SpanIds:
    trace_id: str
    span_id: str


def current_span() -> SpanIds | None:
    """Return the ids of the active span, or None when nothing is being traced.

    Without an SDK provider the API hands out non-recording spans with an invalid
    context, which also yields None.
    """

    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return None
    return SpanIds(
        trace_id=format_trace_id(span_context.trace_id),
        span_id=format_span_id(span_context.span_id),
    )


def get_tracer() -> trace.Tracer:
    # Proxy tracer: picks up whatever provider is installed later.
    return trace.get_tracer(TRACER_NAME)


def configure_tracing(settings: Settings) -> TracerProvider | None:
    """Install an SDK tracer provider exporting spans over OTLP/HTTP."""

    if not settings.tracing_enabled:
        return None

    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "service.version": settings.app_version,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint)))
    trace.set_tracer_provider(provider)
    return provider
