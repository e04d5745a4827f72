"""Tests for observability.

Validates:
- Bound and scoped logging context
- Level filtering and JSON rendering
- Span lifecycle and export
- Root, step and processor spans of a model output run
- Span lifecycle on error, tripwire and early termination
"""

from __future__ import annotations

import io

import orjson
import pytest

from agentstream.foundation.errors import ErrorCode, StreamError
from agentstream.foundation.config import TelemetrySettings
from agentstream.io.streaming import chunk, finish_chunk, step_finish_chunk, text_delta
from agentstream.output import ModelInfo, ModelOutput
from agentstream.runtime.observability import (
    CaptureRenderer,
    InMemoryExporter,
    SpanKind,
    SpanStatus,
    Tracer,
    configure_logging,
    configure_tracing,
    get_logger,
    log_context,
    trace_context,
)


# ═════════════════════════════════════════════════════════════════════════════
# Logging
# ═════════════════════════════════════════════════════════════════════════════


def test_bound_context_and_scope() -> None:
    """Bound and scoped context fields appear on every event."""
    capture = CaptureRenderer()
    configure_logging(renderer=capture, level="DEBUG")
    log = get_logger("test").bind_run("r1", thread_id=None, step=2)

    with log_context(request="q1"):
        log.info("chunk received", type="text-delta")
    log.debug("after scope")

    first, second = capture.entries
    assert first.event == "chunk received"
    expected = {"request": "q1", "logger": "test", "run_id": "r1", "step": 2, "type": "text-delta"}
    assert expected.items() <= first.context.items()
    assert "request" not in second.context
    assert "thread_id" not in first.context


def test_level_filtering() -> None:
    """Events below the configured level are dropped."""
    capture = CaptureRenderer()
    configure_logging(renderer=capture, level="WARNING")
    log = get_logger()
    log.info("hidden")
    log.warning("shown")
    assert capture.events() == ["shown"]


def test_json_renderer_output() -> None:
    """The JSON renderer writes one object per event."""
    out = io.StringIO()
    configure_logging("json", level="INFO", output=out)
    get_logger("svc").info("hello", n=1)
    record = orjson.loads(out.getvalue())
    assert record["event"] == "hello"
    assert record["n"] == 1


def test_unknown_format_rejected() -> None:
    """An unknown log format is refused."""
    with pytest.raises(ValueError, match="Unknown format"):
        configure_logging("xml")


# ═════════════════════════════════════════════════════════════════════════════
# Tracing
# ═════════════════════════════════════════════════════════════════════════════


def test_span_context_manager_exports() -> None:
    """The span context manager exports an OK span with service attributes."""
    exporter = InMemoryExporter()
    tracer = Tracer(service_name="svc", exporter=exporter)
    with tracer.span("agent.stream", SpanKind.STREAM, {"run.id": "r1"}) as span:
        span.set_attribute("stream.usage.total_tokens", 3)

    (exported,) = exporter.spans
    assert exported is span
    assert exported.status is SpanStatus.OK
    assert exported.attributes["service.name"] == "svc"
    assert exported.duration_ms is not None


def test_span_records_exceptions() -> None:
    """An exception escaping a span scope marks the span failed."""
    exporter = InMemoryExporter()
    tracer = Tracer(exporter=exporter)
    with pytest.raises(ValueError):
        with tracer.span("step"):
            raise ValueError("bad json")
    span = exporter.spans[0]
    assert span.status is SpanStatus.ERROR
    assert span.events[0].name == "error"


def test_span_record_error() -> None:
    """record_error marks the span failed and keeps the StreamError."""
    tracer = Tracer(exporter=InMemoryExporter())
    span = tracer.start_span("processor", SpanKind.PROCESSOR)
    span.record_error(StreamError(message="blocked", code=ErrorCode.PROCESSOR_FAILED))
    tracer.end_span(span, SpanStatus.ERROR, "blocked")
    assert span.to_dict()["status"] == "error"
    assert span.stream_error is not None


def test_ending_outer_span_keeps_inner_active() -> None:
    """Spans ended out of order leave the remaining ones on the trace."""
    tracer = Tracer(exporter=InMemoryExporter())
    with trace_context() as trace:
        outer = tracer.start_span("outer")
        inner = tracer.start_span("inner")
        tracer.end_span(outer)
        assert trace.span_context == inner.context
        tracer.end_span(inner)
        assert trace.open_spans == []


def test_unknown_exporter_rejected() -> None:
    """An unknown exporter name is refused."""
    with pytest.raises(ValueError, match="Unknown exporter"):
        configure_tracing(exporter="zipkin")


@pytest.mark.asyncio
async def test_model_output_starts_root_span_when_enabled(make_source) -> None:
    """Enabled telemetry opens and exports a root span for the run."""
    tracer = configure_tracing("agentstream-test", exporter="memory")
    out = ModelOutput(make_source([text_delta("hi"), finish_chunk("stop", {"input_tokens": 1})]), run_id="r1",
                      model=ModelInfo(model_id="m-1", provider="acme"),
                      telemetry=TelemetrySettings(enabled=True))
    await out.consume_stream()

    assert isinstance(tracer.exporter, InMemoryExporter)
    (span,) = tracer.exporter.spans
    assert span.name == "agent.stream"
    assert span.kind is SpanKind.STREAM
    assert span.attributes["model.id"] == "m-1"
    assert span.attributes["stream.response.text"] == "hi"
    assert span.attributes["stream.usage.total_tokens"] == 1
    assert span.status is SpanStatus.OK


class PassThrough:
    name = "pass-through"

    def process_output_result(self, messages, *, abort):
        return messages


class Veto:
    name = "veto"

    def process_output_result(self, messages, *, abort):
        abort("vetoed")


def traced_output(source, run_id: str = "r1", **kwargs) -> ModelOutput:
    return ModelOutput(source, run_id=run_id, telemetry=TelemetrySettings(enabled=True), **kwargs)


@pytest.mark.asyncio
async def test_steps_and_processors_get_child_spans(make_source) -> None:
    """Each step and the final processor pass export a span under the run's root span."""
    tracer = configure_tracing("agentstream-test", exporter="memory")
    out = traced_output(make_source([
        chunk("step-start"),
        text_delta("hi"),
        step_finish_chunk("stop", {"input_tokens": 1}),
        finish_chunk(),
    ]), output_processors=[PassThrough()])
    await out.consume_stream()

    step, processors, root = tracer.exporter.spans
    assert [s.kind for s in (step, processors, root)] == [SpanKind.STEP, SpanKind.PROCESSOR, SpanKind.STREAM]
    assert step.name == "agent.step"
    assert step.context.parent_id == root.context.span_id
    assert step.attributes["step.type"] == "initial"
    assert step.attributes["step.finish_reason"] == "stop"
    assert step.attributes["step.usage.input_tokens"] == 1
    assert processors.name == "output.processors"
    assert processors.context.parent_id == root.context.span_id
    assert processors.attributes["processor.count"] == 1
    assert all(s.status is SpanStatus.OK for s in (step, processors, root))


@pytest.mark.asyncio
async def test_tripwire_marks_processor_and_root_spans(make_source) -> None:
    """A vetoed result adds a tripwire event and flags the root span."""
    tracer = configure_tracing("agentstream-test", exporter="memory")
    out = traced_output(make_source([text_delta("hi"), finish_chunk()]), output_processors=[Veto()])
    await out.consume_stream()

    processors, root = tracer.exporter.spans
    assert [e.name for e in processors.events] == ["tripwire"]
    assert root.attributes["stream.tripwire"] is True
    assert root.attributes["stream.tripwire_reason"] == "vetoed"


@pytest.mark.asyncio
async def test_root_span_ends_when_run_terminates_early(make_source) -> None:
    """A run that never finishes still exports its root span, as an error."""
    tracer = configure_tracing("agentstream-test", exporter="memory")
    with trace_context() as trace:
        await traced_output(make_source([text_delta("partial")])).consume_stream()

    (span,) = tracer.exporter.spans
    assert span.status is SpanStatus.ERROR
    assert span.error == "stream terminated before finish"
    assert trace.open_spans == []


@pytest.mark.asyncio
async def test_root_span_ends_on_upstream_failure(make_source) -> None:
    """An upstream exception ends the root span with the error message."""
    tracer = configure_tracing("agentstream-test", exporter="memory")
    with trace_context() as trace:
        out = traced_output(make_source([text_delta("a")], error=RuntimeError("socket closed")))
        await out.consume_stream(on_error=lambda e: None)

    (span,) = tracer.exporter.spans
    assert span.status is SpanStatus.ERROR
    assert span.error == "socket closed"
    assert trace.open_spans == []


@pytest.mark.asyncio
async def test_interleaved_runs_end_their_own_spans(make_source) -> None:
    """Finishing the earlier of two runs in one trace leaves the later run's span open."""
    tracer = configure_tracing("agentstream-test", exporter="memory")
    with trace_context() as trace:
        first = traced_output(make_source([text_delta("a"), finish_chunk()]), run_id="a")
        second = traced_output(make_source([text_delta("b"), finish_chunk()]), run_id="b")
        await first.consume_stream()
        (still_open,) = trace.open_spans
        await second.consume_stream()

    ended_first, ended_second = tracer.exporter.spans
    assert ended_first.attributes["run.id"] == "a"
    assert ended_second.context == still_open
    assert trace.open_spans == []
