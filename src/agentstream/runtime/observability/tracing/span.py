"""Spans for stream runs.

A run's root span (kind STREAM) is opened when the ModelOutput is built and
closed once the run settles, carrying `stream.usage.*` and
`stream.response.*` attributes. Each model turn gets a STEP span and the
final output-processor pass a PROCESSOR span, both children of the root.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from agentstream.foundation.errors import JsonDict, JsonValue, StreamError

if TYPE_CHECKING:
    from .context import SpanContext


class SpanKind(StrEnum):
    STREAM = "stream"        # one model output run
    STEP = "step"            # one model turn within a run
    PROCESSOR = "processor"  # an output processor pass
    INTERNAL = "internal"


class SpanStatus(StrEnum):
    UNSET = "unset"
    OK = "ok"
    ERROR = "error"


@dataclass(slots=True)
class SpanEvent:
    """Timestamped marker inside a span, e.g. "tripwire" or "error"."""

    name: str
    timestamp: float = field(default_factory=time.time)
    attributes: JsonDict = field(default_factory=dict)


@dataclass(slots=True)
class Span:
    """Timed unit of work with attributes and events.

    Satisfies the TelemetrySpan protocol ModelOutput records into
    (`set_attributes` + `end`).

    Example:
        >>> span = Span("agent.stream", SpanContext.new(), SpanKind.STREAM)
        >>> span.set_attributes({"stream.usage.total_tokens": 52})
        >>> span.end(SpanStatus.OK)
    """

    name: str
    context: SpanContext
    kind: SpanKind = SpanKind.INTERNAL
    attributes: JsonDict = field(default_factory=dict)
    events: list[SpanEvent] = field(default_factory=list)
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None
    status: SpanStatus = SpanStatus.UNSET
    error: str | None = None
    stream_error: StreamError | None = None

    @property
    def duration_ms(self) -> float | None:
        return None if self.end_time is None else (self.end_time - self.start_time) * 1000

    def set_attribute(self, key: str, value: JsonValue) -> Span:
        self.attributes[key] = value
        return self

    def set_attributes(self, attributes: JsonDict) -> Span:
        self.attributes.update(attributes)
        return self

    def add_event(self, name: str, attributes: JsonDict | None = None) -> Span:
        self.events.append(SpanEvent(name, attributes=attributes or {}))
        return self

    def record_error(self, err: StreamError) -> Span:
        """Mark the span failed and add an "error" event with the error's code."""
        self.status, self.error, self.stream_error = SpanStatus.ERROR, err.message, err
        return self.add_event("error", {"message": err.message, "code": err.code.value,
                                        "recoverable": err.recoverable})

    def end(self, status: SpanStatus | None = None, error: str | None = None) -> Span:
        """Close the span. The first end time wins; status and error may still be set."""
        if self.end_time is None:
            self.end_time = time.time()
        self.status = status or self.status
        self.error = error or self.error
        return self

    def to_dict(self) -> JsonDict:
        data: JsonDict = {
            "name": self.name,
            "kind": self.kind.value,
            "trace_id": self.context.trace_id,
            "span_id": self.context.span_id,
            "parent_id": self.context.parent_id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_ms": self.duration_ms,
            "status": self.status.value,
            "error": self.error,
            "attributes": dict(self.attributes),
            "events": [{"name": e.name, "timestamp": e.timestamp, "attributes": e.attributes} for e in self.events],
        }
        if self.stream_error is not None:
            data["stream_error"] = self.stream_error.model_dump(mode="json")
        return data
