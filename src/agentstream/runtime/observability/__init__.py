"""Observability: structured logging and tracing for output streams."""

from .logging import (
    BoundLogger,
    CaptureRenderer,
    ConsoleRenderer,
    JsonRenderer,
    LogEntry,
    LogRenderer,
    NoOpRenderer,
    configure_logging,
    configure_observability,
    get_logger,
    log_context,
)
from .tracing import (
    ConsoleExporter,
    Exporter,
    InMemoryExporter,
    JsonExporter,
    NoOpExporter,
    Span,
    SpanContext,
    SpanEvent,
    SpanKind,
    SpanStatus,
    TraceContext,
    Tracer,
    configure_tracing,
    get_tracer,
    trace_context,
    tracing_from_settings,
)

__all__ = [
    # Logging
    "BoundLogger", "CaptureRenderer", "ConsoleRenderer", "JsonRenderer", "LogEntry", "LogRenderer",
    "NoOpRenderer", "configure_logging", "configure_observability", "get_logger", "log_context",
    # Tracing
    "ConsoleExporter", "Exporter", "InMemoryExporter", "JsonExporter", "NoOpExporter",
    "Span", "SpanContext", "SpanEvent", "SpanKind", "SpanStatus", "TraceContext", "Tracer",
    "configure_tracing", "get_tracer", "trace_context", "tracing_from_settings",
]
