"""Runtime - Execution support for output streams.

Contains: concurrency primitives (deferred results, tee fan-out, stream
combinators) and observability (logging, tracing).
"""

from __future__ import annotations

__all__ = [
    # Concurrency
    "Deferred", "DeferredStatus", "SharedStream", "StreamBranch",
    "collect_stream", "drain_stream", "filter_stream", "map_stream", "take_stream",
    # Observability
    "BoundLogger", "configure_logging", "configure_observability", "get_logger", "log_context",
    "Span", "SpanKind", "SpanStatus", "Tracer", "configure_tracing", "get_tracer",
]


def __getattr__(name: str):
    """Lazy imports to avoid circular dependencies."""
    if name in ("Deferred", "DeferredStatus", "SharedStream", "StreamBranch",
                "collect_stream", "drain_stream", "filter_stream", "map_stream", "take_stream"):
        from . import concurrency
        return getattr(concurrency, name)

    if name in ("BoundLogger", "configure_logging", "configure_observability", "get_logger", "log_context",
                "Span", "SpanKind", "SpanStatus", "Tracer", "configure_tracing", "get_tracer"):
        from . import observability
        return getattr(observability, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
