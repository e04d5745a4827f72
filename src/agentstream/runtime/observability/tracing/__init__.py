"""Tracing module: spans, context, and tracer."""

from .context import SpanContext, TraceContext, trace_context
from .exporter import ConsoleExporter, Exporter, InMemoryExporter, JsonExporter, NoOpExporter
from .span import Span, SpanEvent, SpanKind, SpanStatus
from .tracer import SpanScope, Tracer, configure_tracing, get_tracer, tracing_from_settings

__all__ = [
    # Context
    "SpanContext",
    "TraceContext",
    "trace_context",
    # Exporters
    "ConsoleExporter",
    "Exporter",
    "InMemoryExporter",
    "JsonExporter",
    "NoOpExporter",
    # Span
    "Span",
    "SpanEvent",
    "SpanKind",
    "SpanStatus",
    # Tracer
    "SpanScope",
    "Tracer",
    "configure_tracing",
    "get_tracer",
    "tracing_from_settings",
]
