"""Span exporters: where finished spans go.

- ConsoleExporter: one summary line per span (attributes too when verbose)
- JsonExporter: JSON lines via orjson
- InMemoryExporter: keeps spans for assertions
- NoOpExporter: discards
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, TextIO, runtime_checkable

import orjson

if TYPE_CHECKING:
    from .span import Span


@runtime_checkable
class Exporter(Protocol):
    def export(self, spans: list[Span]) -> None: ...
    def shutdown(self) -> None: ...


@dataclass(slots=True)
class NoOpExporter:
    def export(self, spans: list[Span]) -> None:
        return None

    def shutdown(self) -> None:
        return None


_MARKS = {"ok": "+", "error": "x", "unset": "?"}


@dataclass(slots=True)
class ConsoleExporter:
    """Prints `[kind] name status duration` per span; stream usage totals are appended for STREAM spans."""

    output: TextIO = field(default_factory=lambda: sys.stderr)
    verbose: bool = False

    def export(self, spans: list[Span]) -> None:
        for span in spans:
            print(self._line(span), file=self.output)
            if self.verbose:
                for key in sorted(span.attributes):
                    print(f"    {key}={span.attributes[key]!r}", file=self.output)

    @staticmethod
    def _line(span: Span) -> str:
        indent = "  " if span.context.parent_id else ""
        took = f"{span.duration_ms:.1f}ms" if span.duration_ms is not None else "open"
        line = f"{indent}{_MARKS.get(span.status.value, '?')} [{span.kind.value}] {span.name} {took}"
        if (tokens := span.attributes.get("stream.usage.total_tokens")) is not None:
            line += f" tokens={tokens}"
        if span.error:
            line += f" error={span.error[:60]!r}"
        return line

    def shutdown(self) -> None:
        self.output.flush()


@dataclass(slots=True)
class JsonExporter:
    output: TextIO = field(default_factory=lambda: sys.stdout)

    def export(self, spans: list[Span]) -> None:
        for span in spans:
            self.output.write(orjson.dumps(span.to_dict(), default=str, option=orjson.OPT_NON_STR_KEYS).decode() + "\n")

    def shutdown(self) -> None:
        self.output.flush()


@dataclass(slots=True)
class InMemoryExporter:
    spans: list[Span] = field(default_factory=list)

    def export(self, spans: list[Span]) -> None:
        self.spans.extend(spans)

    def shutdown(self) -> None:
        return None

    def clear(self) -> None:
        self.spans.clear()
