"""Tracer: opens spans under the active trace and exports them when they end.

ModelOutput starts its root span with `start_span` when telemetry is enabled
and ends it through `end_span` once the run settles. Short-lived spans use the
`span()` context manager, which records an escaping exception on the span.
"""

from __future__ import annotations

from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from agentstream.foundation.errors import JsonDict, StreamError

from .context import SpanContext, TraceContext
from .exporter import ConsoleExporter, Exporter, InMemoryExporter, JsonExporter, NoOpExporter
from .span import Span, SpanKind, SpanStatus

if TYPE_CHECKING:
    from types import TracebackType

    from agentstream.foundation.config import TelemetrySettings

_global_tracer: ContextVar[Tracer | None] = ContextVar("agentstream_tracer", default=None)


@dataclass(slots=True)
class Tracer:
    """Span factory bound to one exporter.

    A disabled tracer still hands out spans (so callers need no branches) but
    never pushes them onto the trace or exports them.

    Example:
        >>> tracer = Tracer(service_name="agent-api", exporter=InMemoryExporter())
        >>> with tracer.span("output.processor", SpanKind.PROCESSOR) as span:
        ...     span.set_attribute("processor.name", "moderation")
    """

    service_name: str = "agentstream"
    exporter: Exporter = field(default_factory=ConsoleExporter)
    enabled: bool = True

    def configure_global(self) -> None:
        _global_tracer.set(self)

    @classmethod
    def get_global(cls) -> Tracer | None:
        return _global_tracer.get()

    def span(self, name: str, kind: SpanKind = SpanKind.INTERNAL, attributes: JsonDict | None = None) -> SpanScope:
        return SpanScope(self, name, kind, attributes or {})

    def start_span(self, name: str, kind: SpanKind = SpanKind.INTERNAL, attributes: JsonDict | None = None,
                   parent: Span | None = None) -> Span:
        """Open a span under `parent`, or under the innermost active one. End it with `end_span`."""
        if not self.enabled:
            return Span(name, SpanContext.new(), kind, dict(attributes or {}))
        trace = TraceContext.current()
        context = (parent.context if parent is not None else trace.span_context).child()
        trace.push_span(context)
        return Span(name, context, kind, {"service.name": self.service_name, **(attributes or {})})

    def end_span(self, span: Span, status: SpanStatus = SpanStatus.OK, error: str | None = None) -> None:
        if not self.enabled:
            return
        span.end(status, error)
        self.exporter.export([span])
        if (trace := TraceContext.get()) is not None:
            trace.remove_span(span.context)

    def shutdown(self) -> None:
        self.exporter.shutdown()


@dataclass(slots=True)
class SpanScope:
    """`with` / `async with` wrapper around start_span/end_span."""

    tracer: Tracer
    name: str
    kind: SpanKind
    attributes: JsonDict
    span: Span | None = None

    def __enter__(self) -> Span:
        self.span = self.tracer.start_span(self.name, self.kind, self.attributes)
        return self.span

    def __exit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None,
                 exc_tb: TracebackType | None) -> None:
        if self.span is None:
            return
        if exc_val is not None:
            self.span.record_error(StreamError.from_exception(exc_val, context=self.name))
            self.tracer.end_span(self.span, SpanStatus.ERROR, str(exc_val))
            return
        self.tracer.end_span(self.span, SpanStatus.OK if self.span.status is SpanStatus.UNSET else self.span.status)

    async def __aenter__(self) -> Span:
        return self.__enter__()

    async def __aexit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None,
                        exc_tb: TracebackType | None) -> None:
        self.__exit__(exc_type, exc_val, exc_tb)


# ─────────────────────────────────────────────────────────────────────────────
# Global Tracer
# ─────────────────────────────────────────────────────────────────────────────

_EXPORTERS = {"json": JsonExporter, "memory": InMemoryExporter, "none": NoOpExporter}


def get_tracer() -> Tracer:
    """The configured global tracer, or a disabled one."""
    return _global_tracer.get() or Tracer(enabled=False, exporter=NoOpExporter())


def configure_tracing(service_name: str = "agentstream", exporter: str | Exporter = "console", *,
                      verbose: bool = False) -> Tracer:
    """Install a global tracer.

    exporter: "console", "json", "memory", "none", or any Exporter instance.
    """
    if isinstance(exporter, str):
        if exporter == "console":
            exporter = ConsoleExporter(verbose=verbose)
        elif exporter in _EXPORTERS:
            exporter = _EXPORTERS[exporter]()
        else:
            raise ValueError(f"Unknown exporter: {exporter}. Use 'console', 'json', 'memory', or 'none'")
    tracer = Tracer(service_name=service_name, exporter=exporter)
    tracer.configure_global()
    return tracer


def tracing_from_settings(settings: TelemetrySettings, exporter: str | Exporter = "console") -> Tracer:
    """Global tracer per TelemetrySettings; a disabled tracer when telemetry is off."""
    if settings.enabled:
        return configure_tracing(settings.service_name, exporter)
    tracer = Tracer(service_name=settings.service_name, exporter=NoOpExporter(), enabled=False)
    tracer.configure_global()
    return tracer
