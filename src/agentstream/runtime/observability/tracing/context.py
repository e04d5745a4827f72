"""Active-trace bookkeeping.

Each asyncio task sees its own TraceContext (a ContextVar copy), so the root
span of one ModelOutput never becomes the parent of a span in a sibling run.
"""

from __future__ import annotations

import secrets
from contextvars import ContextVar, Token
from dataclasses import dataclass, field

_active: ContextVar[TraceContext | None] = ContextVar("agentstream_trace", default=None)


@dataclass(frozen=True, slots=True)
class SpanContext:
    """Trace id (32 hex), span id (16 hex) and optional parent span id."""

    trace_id: str
    span_id: str
    parent_id: str | None = None

    @classmethod
    def new(cls) -> SpanContext:
        return cls(secrets.token_hex(16), secrets.token_hex(8))

    def child(self) -> SpanContext:
        return SpanContext(self.trace_id, secrets.token_hex(8), self.span_id)


@dataclass(slots=True)
class TraceContext:
    """Open spans of the current task, innermost last."""

    root: SpanContext = field(default_factory=SpanContext.new)
    open_spans: list[SpanContext] = field(default_factory=list)

    @property
    def span_context(self) -> SpanContext:
        return self.open_spans[-1] if self.open_spans else self.root

    def push_span(self, context: SpanContext) -> None:
        self.open_spans.append(context)

    def remove_span(self, context: SpanContext) -> bool:
        """Drop `context` wherever it sits; spans of concurrent runs may end out of order."""
        for i in range(len(self.open_spans) - 1, -1, -1):
            if self.open_spans[i] == context:
                del self.open_spans[i]
                return True
        return False

    @classmethod
    def get(cls) -> TraceContext | None:
        return _active.get()

    @classmethod
    def current(cls) -> TraceContext:
        """The active trace, starting one for this task if there is none."""
        if (trace := _active.get()) is None:
            trace = cls()
            _active.set(trace)
        return trace


class trace_context:
    """Run the enclosed block under a fresh trace (e.g. one per incoming request)."""

    __slots__ = ("_trace", "_token")

    def __init__(self, root: SpanContext | None = None) -> None:
        self._trace = TraceContext(root or SpanContext.new())
        self._token: Token[TraceContext | None] | None = None

    def __enter__(self) -> TraceContext:
        self._token = _active.set(self._trace)
        return self._trace

    def __exit__(self, *_: object) -> None:
        if self._token is not None:
            _active.reset(self._token)
            self._token = None
