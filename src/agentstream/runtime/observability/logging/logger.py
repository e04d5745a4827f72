"""Structured logging for output streams.

A BoundLogger carries run context (run id, model, thread) and renders one
LogEntry per call through the configured renderer. Scoped context from
`log_context` and the ids of the active trace span are merged into every entry.

Quick Start:
    >>> from agentstream.runtime.observability import get_logger, configure_logging
    >>>
    >>> configure_logging(format="console")  # or "json" for production
    >>> log = get_logger("agentstream.output").bind_run("run-1", model_id="gpt-x")
    >>> log.info("stream finished", finish_reason="stop", total_tokens=52)
    # => 10:30:45.120 info  stream finished run=run-1 finish_reason="stop" logger="agentstream.output" ...
"""

from __future__ import annotations

import logging
import sys
import time
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol, TextIO, runtime_checkable

import orjson

from agentstream.foundation.errors import JsonDict, JsonValue

if TYPE_CHECKING:
    from types import TracebackType

    from agentstream.foundation.config import AgentStreamSettings

_scoped: ContextVar[JsonDict] = ContextVar("agentstream_log_scope", default={})
_renderer: ContextVar[LogRenderer | None] = ContextVar("agentstream_log_renderer", default=None)
_threshold: ContextVar[int] = ContextVar("agentstream_log_level", default=logging.INFO)


# ─────────────────────────────────────────────────────────────────────────────
# Entries & Logger
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(slots=True)
class LogEntry:
    """One rendered log call."""

    timestamp: float
    level: str
    event: str
    context: JsonDict

    @property
    def iso_time(self) -> str:
        return datetime.fromtimestamp(self.timestamp, tz=UTC).isoformat()

    @property
    def clock(self) -> str:
        """Wall-clock time as HH:MM:SS.mmm."""
        return datetime.fromtimestamp(self.timestamp, tz=UTC).strftime("%H:%M:%S.%f")[:-3]


@dataclass(slots=True)
class BoundLogger:
    """Logger with bound key/value context. `bind` returns a new logger.

    Example:
        >>> log = BoundLogger(context={"run_id": "run-1"})
        >>> log.debug("step finished", step=0, finish_reason="tool-calls")
    """

    context: JsonDict = field(default_factory=dict)
    level: int = logging.INFO
    renderer: LogRenderer | None = None

    def bind(self, **kw: JsonValue) -> BoundLogger:
        return BoundLogger({**self.context, **kw}, self.level, self.renderer)

    def bind_run(self, run_id: str, **kw: JsonValue) -> BoundLogger:
        """Bind the run id plus any non-None identifiers (model, thread, resource)."""
        return self.bind(run_id=run_id, **{k: v for k, v in kw.items() if v is not None})

    def debug(self, event: str, **kw: JsonValue) -> None:
        self._emit(logging.DEBUG, event, kw)

    def info(self, event: str, **kw: JsonValue) -> None:
        self._emit(logging.INFO, event, kw)

    def warning(self, event: str, **kw: JsonValue) -> None:
        self._emit(logging.WARNING, event, kw)

    def error(self, event: str, **kw: JsonValue) -> None:
        self._emit(logging.ERROR, event, kw)

    def _emit(self, level: int, event: str, kw: JsonDict) -> None:
        if level < self.level:
            return
        context = {**_scoped.get(), **self.context, **kw, **_span_ids()}
        entry = LogEntry(time.time(), logging.getLevelName(level).lower(), event, context)
        (self.renderer or _active_renderer()).render(entry)


class log_context:
    """Scope extra context onto every entry logged inside the block.

    Example:
        >>> with log_context(request_id="q-7"):
        ...     log.info("chunk received")  # includes request_id
    """

    __slots__ = ("_extra", "_token")

    def __init__(self, **kw: JsonValue) -> None:
        self._extra: JsonDict = dict(kw)
        self._token = None

    def __enter__(self) -> log_context:
        self._token = _scoped.set({**_scoped.get(), **self._extra})
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None,
                 exc_tb: TracebackType | None) -> None:
        if self._token is not None:
            _scoped.reset(self._token)
            self._token = None


# ─────────────────────────────────────────────────────────────────────────────
# Renderers
# ─────────────────────────────────────────────────────────────────────────────


@runtime_checkable
class LogRenderer(Protocol):
    """Writes log entries somewhere."""

    def render(self, entry: LogEntry) -> None: ...


_ANSI = {"reset": "\033[0m", "dim": "\033[2m", "bold": "\033[1m", "red": "\033[31m",
         "green": "\033[32m", "yellow": "\033[33m", "magenta": "\033[35m", "cyan": "\033[36m"}
_PLAIN = dict.fromkeys(_ANSI, "")
_LEVEL_STYLE = {"debug": "dim", "info": "green", "warning": "yellow", "error": "red", "critical": "red"}


@dataclass(slots=True)
class ConsoleRenderer:
    """One line per entry: time, level, event, run id, then sorted key=value pairs.

    Long string values (text previews, tool arguments) are cut to `max_value_len`.
    """

    output: TextIO = field(default_factory=lambda: sys.stderr)
    colors: bool | None = None  # None = color only when writing to a TTY
    max_value_len: int = 80

    def __post_init__(self) -> None:
        if self.colors is None:
            self.colors = getattr(self.output, "isatty", lambda: False)()

    def render(self, entry: LogEntry) -> None:
        a = _ANSI if self.colors else _PLAIN
        context = dict(entry.context)
        run_id = context.pop("run_id", None)
        head = [f"{a['dim']}{entry.clock}{a['reset']}",
                f"{a[_LEVEL_STYLE.get(entry.level, 'dim')]}{entry.level:<7}{a['reset']}",
                f"{a['bold']}{entry.event}{a['reset']}"]
        if run_id:
            head.append(f"{a['magenta']}run={run_id}{a['reset']}")
        pairs = [f"{a['cyan']}{k}{a['reset']}={self._value(v)}" for k, v in sorted(context.items())]
        print(" ".join(head + pairs), file=self.output)

    def _value(self, value: object) -> str:
        match value:
            case str():
                text = value if len(value) <= self.max_value_len else value[: self.max_value_len] + "..."
                return orjson.dumps(text).decode()
            case bool() | None:
                return orjson.dumps(value).decode()
            case dict() | list() | tuple():
                return f"<{len(value)} items>"
            case _:
                return str(value)


@dataclass(slots=True)
class JsonRenderer:
    """JSON Lines, one object per entry."""

    output: TextIO = field(default_factory=lambda: sys.stdout)

    def render(self, entry: LogEntry) -> None:
        record = {"timestamp": entry.iso_time, "level": entry.level, "event": entry.event, **entry.context}
        self.output.write(orjson.dumps(record, default=str, option=orjson.OPT_NON_STR_KEYS).decode() + "\n")


@dataclass(slots=True)
class NoOpRenderer:
    """Drops every entry."""

    def render(self, entry: LogEntry) -> None:
        return None


@dataclass(slots=True)
class CaptureRenderer:
    """Keeps entries in memory for assertions."""

    entries: list[LogEntry] = field(default_factory=list)

    def render(self, entry: LogEntry) -> None:
        self.entries.append(entry)

    def events(self, level: str | None = None) -> list[str]:
        return [e.event for e in self.entries if level is None or e.level == level]


# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────


def configure_logging(
    format: str = "console",  # noqa: A002
    level: str = "INFO",
    *,
    output: TextIO | None = None,
    colors: bool | None = None,
    renderer: LogRenderer | None = None,
) -> LogRenderer:
    """Set the renderer and threshold used by loggers created afterwards.

    format: "console", "json" or "none"; ignored when `renderer` is given.
    """
    if renderer is None:
        match format:
            case "console":
                renderer = ConsoleRenderer(output=output or sys.stderr, colors=colors)
            case "json":
                renderer = JsonRenderer(output=output or sys.stdout)
            case "none":
                renderer = NoOpRenderer()
            case _:
                raise ValueError(f"Unknown format: {format}. Use 'console', 'json', or 'none'")
    _threshold.set(logging.getLevelNamesMapping().get(level.upper(), logging.INFO))
    _renderer.set(renderer)
    return renderer


def configure_observability(settings: AgentStreamSettings | None = None, *, trace_exporter: str = "console") -> LogRenderer:
    """Configure logging and tracing from settings (defaults to `get_settings()`)."""
    from agentstream.foundation.config import get_settings

    from ..tracing import tracing_from_settings

    settings = settings or get_settings()
    level = "DEBUG" if settings.debug else settings.logging.level
    renderer = configure_logging(settings.logging.format, level)
    tracing_from_settings(settings.telemetry, exporter=trace_exporter)
    return renderer


def get_logger(name: str | None = None, **context: JsonValue) -> BoundLogger:
    """Logger at the configured threshold; `name` is bound as `logger`."""
    if name:
        context["logger"] = name
    return BoundLogger(context, _threshold.get())


def _active_renderer() -> LogRenderer:
    if (renderer := _renderer.get()) is None:
        renderer = ConsoleRenderer()
        _renderer.set(renderer)
    return renderer


def _span_ids() -> JsonDict:
    """Ids of the innermost active span, for correlating logs with traces."""
    from ..tracing import TraceContext

    if (trace := TraceContext.get()) is None:
        return {}
    span = trace.span_context
    ids: JsonDict = {"trace_id": span.trace_id, "span_id": span.span_id}
    if span.parent_id:
        ids["parent_span_id"] = span.parent_id
    return ids
