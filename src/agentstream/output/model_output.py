"""ModelOutput: aggregation of one model run's output stream.

ModelOutput wraps the chunk stream of a single run. A single transform stage
(the aggregator) reads the upstream producer once, buffers text, reasoning,
tool calls, steps and usage, and settles one Deferred per derived fact when
the run ends. The processed stream is fanned out through a SharedStream so any
number of views can be requested, at any time, without re-reading the source.

Views:
    - full_stream: canonical chunks after output processors and structured decoding
    - text_stream: text deltas (incremental JSON text for array outputs)
    - object_stream / element_stream: partial structured values / array elements
    - tee_stream(): raw aggregated chunks

Results (awaitable, reading any of them starts consumption lazily):
    text, reasoning, steps, usage, tool_calls, finish_reason, object, ...

Example:
    >>> out = ModelOutput(provider_chunks(), run_id="run-1")
    >>> async for delta in out.text_stream:
    ...     print(delta, end="")
    >>> await out.usage
    {'input_tokens': 12, 'output_tokens': 40}
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import asdict, dataclass, field, replace
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import orjson

from agentstream.foundation.config import AgentStreamSettings, TelemetrySettings, get_settings
from agentstream.foundation.errors import (
    HookError,
    JsonDict,
    ProcessorError,
    StreamException,
    TerminationError,
    TripWire,
    as_stream_exception,
)
from agentstream.io.streaming import Chunk, ChunkFrom, ChunkType, error_chunk, tripwire_chunk
from agentstream.runtime.concurrency import (
    Deferred,
    DeferredStatus,
    SharedStream,
    drain_stream,
    filter_stream,
    map_stream,
)
from agentstream.runtime.observability import get_logger
from agentstream.runtime.observability.tracing import Span, SpanKind, SpanStatus, Tracer, get_tracer

from .partial_json import parse_partial_json
from .processors import ProcessorRunner, ResponseMessage
from .schema import OutputFormat, OutputSchema
from .step import ReasoningDetail, StepBuffer, StepResult, StepType
from .transforms import json_text_transformer, object_stream_transformer
from .usage import UsageCounter

if TYPE_CHECKING:
    from .processors import OutputProcessor

__all__ = ["FinishEvent", "FullOutput", "ModelInfo", "ModelOutput", "TelemetrySpan"]

StepHook = Callable[[StepResult], object]
FinishHook = Callable[["FinishEvent"], object]

RESULT_NAMES = (
    "text", "reasoning", "reasoning_text", "reasoning_details", "sources", "files", "steps",
    "finish_reason", "tool_calls", "tool_results", "usage", "total_usage", "warnings",
    "provider_metadata", "response", "request", "object",
)


# ─────────────────────────────────────────────────────────────────────────────
# Public Types
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ModelInfo:
    """Identity of the model that produced the stream."""
    model_id: str = ""
    provider: str = ""
    version: str = "v2"


@runtime_checkable
class TelemetrySpan(Protocol):
    """Anything that accepts attributes and can be ended: a tracing Span or an OpenTelemetry span."""

    def set_attributes(self, attributes: JsonDict) -> Any: ...
    def end(self) -> Any: ...


@dataclass(slots=True)
class FinishEvent:
    """Consolidated run result handed to the `on_finish` hook."""
    text: str
    finish_reason: str | None
    usage: dict[str, int]
    total_usage: dict[str, int]
    steps: list[StepResult]
    reasoning: str = ""
    reasoning_text: str | None = None
    reasoning_details: list[ReasoningDetail] = field(default_factory=list)
    sources: list[Any] = field(default_factory=list)
    files: list[Any] = field(default_factory=list)
    tool_calls: list[JsonDict] = field(default_factory=list)
    tool_results: list[JsonDict] = field(default_factory=list)
    static_tool_calls: list[JsonDict] = field(default_factory=list)
    dynamic_tool_calls: list[JsonDict] = field(default_factory=list)
    static_tool_results: list[JsonDict] = field(default_factory=list)
    dynamic_tool_results: list[JsonDict] = field(default_factory=list)
    warnings: list[Any] = field(default_factory=list)
    request: JsonDict = field(default_factory=dict)
    response: JsonDict = field(default_factory=dict)
    provider_metadata: JsonDict | None = None
    error: StreamException | None = None
    tripwire: bool = False
    tripwire_reason: str | None = None


@dataclass(slots=True)
class FullOutput:
    """Every result of a run, returned by `ModelOutput.get_full_output()`."""
    text: str
    usage: dict[str, int]
    total_usage: dict[str, int]
    steps: list[StepResult]
    finish_reason: str | None
    warnings: list[Any]
    provider_metadata: JsonDict | None
    request: JsonDict
    response: JsonDict
    reasoning: str
    reasoning_text: str | None
    reasoning_details: list[ReasoningDetail]
    tool_calls: list[JsonDict]
    tool_results: list[JsonDict]
    sources: list[Any]
    files: list[Any]
    object: Any = None
    error: StreamException | None = None
    tripwire: bool = False
    tripwire_reason: str | None = None


@dataclass(slots=True)
class _RunBuffer:
    """Run-scoped buffers. Only the aggregator writes to them."""
    text: list[str] = field(default_factory=list)
    text_blocks: dict[str, list[str]] = field(default_factory=dict)
    reasoning: list[str] = field(default_factory=list)
    reasoning_details: dict[str, ReasoningDetail] = field(default_factory=dict)
    sources: list[Any] = field(default_factory=list)
    files: list[Any] = field(default_factory=list)
    tool_calls: list[JsonDict] = field(default_factory=list)
    tool_results: list[JsonDict] = field(default_factory=list)
    steps: list[StepResult] = field(default_factory=list)
    warnings: list[Any] = field(default_factory=list)
    request: JsonDict = field(default_factory=dict)
    response: JsonDict = field(default_factory=dict)
    provider_metadata: JsonDict | None = None
    finish_reason: str | None = None
    tool_args: dict[str, list[str]] = field(default_factory=dict)
    tool_names: dict[str, str] = field(default_factory=dict)
    tool_streams_started: set[str] = field(default_factory=set)


async def _call_hook(fn: Callable[[Any], object], value: Any) -> None:
    result = fn(value)
    if asyncio.iscoroutine(result):
        await result


def _is_dynamic(payload: JsonDict) -> bool:
    return bool(payload.get("dynamic"))


def _nested_agent_usage(output: Any) -> Any:
    """Usage reported by a sub-agent whose `finish` chunk is the output of a tool call."""
    match output:
        case Chunk(type=ChunkType.FINISH, origin=ChunkFrom.AGENT, payload=payload):
            pass
        case {"from": "AGENT", "type": "finish", "payload": dict() as payload}:
            pass
        case _:
            return None
    return (payload.get("output") or {}).get("usage") or payload.get("usage")


def _step_messages(text: str, tool_calls: Sequence[JsonDict], tool_results: Sequence[JsonDict]) -> list[ResponseMessage]:
    content: list[JsonDict] = [{"type": "text", "text": text}] if text else []
    content += [{"type": "tool-call", **tc} for tc in tool_calls]
    messages = [ResponseMessage("assistant", content)] if content else []
    if tool_results:
        messages.append(ResponseMessage("tool", [{"type": "tool-result", **tr} for tr in tool_results]))
    return messages


# ─────────────────────────────────────────────────────────────────────────────
# ModelOutput
# ─────────────────────────────────────────────────────────────────────────────


class ModelOutput:
    """Aggregated, multiply-consumable output of one model run.

    Args:
        stream: Upstream chunk source (read exactly once)
        run_id: Identifier of the run
        model: Model identity, used in hook error context and telemetry
        output: Structured output request (type, enum domain or JSON schema), or None
        output_processors: Processors applied to the full stream and final messages
        on_step_finish: Hook called with each StepResult (sync or async)
        on_finish: Hook called with the FinishEvent (sync or async)
        include_raw_chunks: Keep `raw` chunks in full_stream (default from settings)
        tool_call_streaming: Synthesize input-streaming-start chunks (default from settings)
        root_span: Telemetry sink for the run; started from the global tracer when
            telemetry is enabled and none is given
        telemetry: Telemetry recording options (default from settings)
        thread_id, resource_id: Conversation identifiers for error context
        settings: Settings to read defaults from (default `get_settings()`)
    """

    def __init__(
        self,
        stream: AsyncIterator[Chunk],
        *,
        run_id: str,
        model: ModelInfo | None = None,
        output: Any = None,
        output_processors: Sequence[OutputProcessor | object] = (),
        on_step_finish: StepHook | None = None,
        on_finish: FinishHook | None = None,
        include_raw_chunks: bool | None = None,
        tool_call_streaming: bool | None = None,
        root_span: TelemetrySpan | None = None,
        telemetry: TelemetrySettings | None = None,
        thread_id: str | None = None,
        resource_id: str | None = None,
        settings: AgentStreamSettings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.run_id = run_id
        self.model = model or ModelInfo()
        self.schema = OutputSchema.from_type(output) if output is not None else None
        self.thread_id = thread_id
        self.resource_id = resource_id
        self._processors = ProcessorRunner(output_processors, run_id=run_id)
        self._on_step_finish = on_step_finish
        self._on_finish = on_finish
        self._include_raw = settings.stream.include_raw_chunks if include_raw_chunks is None else include_raw_chunks
        self._tool_call_streaming = (settings.stream.tool_call_streaming if tool_call_streaming is None
                                     else tool_call_streaming)
        self._telemetry = telemetry or settings.telemetry
        self._tracer: Tracer | None = None
        if root_span is None and self._telemetry.enabled:
            self._tracer = get_tracer()
            root_span = self._tracer.start_span("agent.stream", SpanKind.STREAM, {
                "run.id": run_id, "model.id": self.model.model_id, "model.provider": self.model.provider})
        self._root_span = root_span
        self._log = get_logger("agentstream.output").bind_run(
            run_id, model_id=self.model.model_id or None, thread_id=thread_id, resource_id=resource_id)

        self._state = _RunBuffer()
        self._step = StepBuffer()
        self._usage = UsageCounter()
        self._error: StreamException | None = None
        self._tripwire = False
        self._tripwire_reason: str | None = None
        self._closed = False
        self._consumer: asyncio.Task[None] | None = None
        self._step_span: Span | None = None

        self._deferred: dict[str, Deferred[Any]] = {
            name: Deferred(name, on_wait=self._ensure_consuming) for name in RESULT_NAMES}
        if self.schema is None and not self._processors:
            self._deferred["object"].resolve(None)

        self._shared: SharedStream[Chunk] = SharedStream(self._aggregate(stream))

    def __repr__(self) -> str:
        return f"ModelOutput(run_id={self.run_id!r}, model={self.model.model_id!r})"

    # ─────────────────────────────────────────────────────────────────
    # Awaitable results
    # ─────────────────────────────────────────────────────────────────

    @property
    def text(self) -> Deferred[str]:
        return self._deferred["text"]

    @property
    def reasoning(self) -> Deferred[str]:
        return self._deferred["reasoning"]

    @property
    def reasoning_text(self) -> Deferred[str | None]:
        return self._deferred["reasoning_text"]

    @property
    def reasoning_details(self) -> Deferred[list[ReasoningDetail]]:
        return self._deferred["reasoning_details"]

    @property
    def sources(self) -> Deferred[list[Any]]:
        return self._deferred["sources"]

    @property
    def files(self) -> Deferred[list[Any]]:
        return self._deferred["files"]

    @property
    def steps(self) -> Deferred[list[StepResult]]:
        return self._deferred["steps"]

    @property
    def finish_reason(self) -> Deferred[str | None]:
        return self._deferred["finish_reason"]

    @property
    def tool_calls(self) -> Deferred[list[JsonDict]]:
        return self._deferred["tool_calls"]

    @property
    def tool_results(self) -> Deferred[list[JsonDict]]:
        return self._deferred["tool_results"]

    @property
    def usage(self) -> Deferred[dict[str, int]]:
        return self._deferred["usage"]

    @property
    def total_usage(self) -> Deferred[dict[str, int]]:
        return self._deferred["total_usage"]

    @property
    def warnings(self) -> Deferred[list[Any]]:
        return self._deferred["warnings"]

    @property
    def provider_metadata(self) -> Deferred[JsonDict | None]:
        return self._deferred["provider_metadata"]

    @property
    def response(self) -> Deferred[JsonDict]:
        return self._deferred["response"]

    @property
    def request(self) -> Deferred[JsonDict]:
        return self._deferred["request"]

    @property
    def object(self) -> Deferred[Any]:
        return self._deferred["object"]

    # ─────────────────────────────────────────────────────────────────
    # Synchronous state
    # ─────────────────────────────────────────────────────────────────

    @property
    def error(self) -> StreamException | None:
        return self._error

    @property
    def tripwire(self) -> bool:
        return self._tripwire

    @property
    def tripwire_reason(self) -> str | None:
        return self._tripwire_reason

    @property
    def text_blocks(self) -> dict[str, str]:
        """Text buffered per text block id, for producers that tag deltas with an `id`."""
        return {k: "".join(v) for k, v in self._state.text_blocks.items()}

    def status(self) -> dict[str, DeferredStatus]:
        return {name: d.status for name, d in self._deferred.items()}

    def immediate_text(self) -> str:
        return "".join(self._state.text)

    def immediate_usage(self) -> dict[str, int]:
        return self._usage.snapshot()

    def immediate_tool_calls(self) -> list[JsonDict]:
        return list(self._state.tool_calls)

    def immediate_tool_results(self) -> list[JsonDict]:
        return list(self._state.tool_results)

    def immediate_finish_reason(self) -> str | None:
        return self._state.finish_reason

    def immediate_warnings(self) -> list[Any]:
        return list(self._state.warnings)

    # ─────────────────────────────────────────────────────────────────
    # Streams
    # ─────────────────────────────────────────────────────────────────

    def tee_stream(self) -> AsyncIterator[Chunk]:
        """New branch over the aggregated chunks, starting from the first one."""
        return self._shared.tee()

    @property
    def full_stream(self) -> AsyncIterator[Chunk]:
        """Canonical chunk stream: output processors, then structured decoding, `raw` chunks dropped unless kept."""
        return self._full_stream(self.tee_stream())

    @property
    def text_stream(self) -> AsyncIterator[str]:
        if self.schema is not None and self.schema.format is OutputFormat.ARRAY:
            return json_text_transformer(self.full_stream, self.schema)
        deltas = filter_stream(self.tee_stream(), lambda c: c.type == ChunkType.TEXT_DELTA)
        return map_stream(deltas, lambda c: c.payload.get("text", ""))

    @property
    def object_stream(self) -> AsyncIterator[Any]:
        """Partial structured values, in emission order."""
        return map_stream(filter_stream(self.full_stream, lambda c: c.type == ChunkType.OBJECT), lambda c: c.object)

    @property
    def element_stream(self) -> AsyncIterator[Any]:
        """Array elements, each delivered once as soon as it is complete."""
        return self._element_stream()

    async def _element_stream(self) -> AsyncIterator[Any]:
        published = 0
        async for chunk in self.full_stream:
            if chunk.type != ChunkType.OBJECT or not isinstance(chunk.object, list):
                continue
            while published < len(chunk.object):
                yield chunk.object[published]
                published += 1

    async def _full_stream(self, source: AsyncIterator[Chunk]) -> AsyncIterator[Chunk]:
        stream = self._process_parts(source) if self._processors else source
        decoded = object_stream_transformer(
            stream, self.schema, on_finish=self._deferred["object"].resolve, on_error=self._deferred["object"].reject)
        async for chunk in decoded:
            if chunk.type == ChunkType.RAW and not self._include_raw:
                continue
            yield chunk
        self._reject_unfinished()

    async def _process_parts(self, source: AsyncIterator[Chunk]) -> AsyncIterator[Chunk]:
        states = self._processors.new_states()
        async for chunk in source:
            try:
                processed = await self._processors.process_part(chunk, states)
            except ProcessorError as e:
                self._log.error("output processor failed", error=str(e))
                self._error = e
                self._fail(e)
                yield error_chunk(e, self.run_id)
                return
            if processed.blocked:
                reason = processed.reason or "Output processor blocked content"
                self._trip(reason)
                yield tripwire_chunk(reason, self.run_id)
                return
            if processed.part is not None:
                yield processed.part

    # ─────────────────────────────────────────────────────────────────
    # Consumption
    # ─────────────────────────────────────────────────────────────────

    def _ensure_consuming(self) -> None:
        if self._consumer is None:
            self._consumer = asyncio.get_running_loop().create_task(self.consume_stream())

    async def consume_stream(self, on_error: Callable[[Exception], object] | None = None) -> None:
        """Drive the full stream to the end. Errors go to `on_error`, or are logged."""
        def _log_error(e: Exception) -> None:
            self._log.warning("stream consumption failed", error=str(e), error_type=type(e).__name__)

        await drain_stream(self.full_stream, on_error=on_error or _log_error)

    async def get_full_output(self) -> FullOutput:
        """Consume the whole stream and return every result. Raises the run's error, if any."""
        await drain_stream(self.full_stream)
        return FullOutput(
            text=await self.text,
            usage=await self.usage,
            total_usage=await self.total_usage,
            steps=await self.steps,
            finish_reason=await self.finish_reason,
            warnings=await self.warnings,
            provider_metadata=await self.provider_metadata,
            request=await self.request,
            response=await self.response,
            reasoning=await self.reasoning,
            reasoning_text=await self.reasoning_text,
            reasoning_details=await self.reasoning_details,
            tool_calls=await self.tool_calls,
            tool_results=await self.tool_results,
            sources=await self.sources,
            files=await self.files,
            object=await self.object,
            error=self._error,
            tripwire=self._tripwire,
            tripwire_reason=self._tripwire_reason,
        )

    async def aclose(self) -> None:
        """Stop consumption and close the upstream source. Pending results reject with TerminationError."""
        if self._consumer is not None and not self._consumer.done():
            self._consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer
        await self._shared.aclose()
        self._reject_unfinished()

    # ─────────────────────────────────────────────────────────────────
    # Aggregator
    # ─────────────────────────────────────────────────────────────────

    async def _aggregate(self, source: AsyncIterator[Chunk]) -> AsyncIterator[Chunk]:
        try:
            async for chunk in source:
                for out in await self._handle(chunk):
                    yield out
        except Exception as e:
            self._error = as_stream_exception(e, run_id=self.run_id)
            self._log.error("upstream stream failed", error=str(e), error_type=type(e).__name__)
            self._fail(self._error)
            raise
        finally:
            if (aclose := getattr(source, "aclose", None)) is not None:
                await aclose()

    async def _handle(self, chunk: Chunk) -> list[Chunk]:
        """Update buffers for one chunk; returns the chunks to publish in its place."""
        state, step, payload = self._state, self._step, chunk.payload
        match chunk.type:
            case ChunkType.STEP_START:
                self._open_step_span()
            case ChunkType.TEXT_DELTA:
                text = payload.get("text") or ""
                state.text.append(text)
                step.text.append(text)
                if (block_id := payload.get("id")) is not None:
                    state.text_blocks.setdefault(block_id, []).append(text)
            case ChunkType.REASONING_START | ChunkType.REDACTED_REASONING:
                detail = self._reasoning_block(payload.get("id") or "")
                if chunk.type == ChunkType.REDACTED_REASONING:
                    detail.type = "redacted"
                detail.provider_metadata = payload.get("provider_metadata") or detail.provider_metadata
            case ChunkType.REASONING_DELTA:
                text = payload.get("text") or ""
                state.reasoning.append(text)
                step.reasoning.append(text)
                detail = self._reasoning_block(payload.get("id") or "")
                detail.text += text
                detail.provider_metadata = payload.get("provider_metadata") or detail.provider_metadata
            case ChunkType.REASONING_END | ChunkType.REASONING_SIGNATURE:
                if (metadata := payload.get("provider_metadata")) is not None:
                    self._reasoning_block(payload.get("id") or "").provider_metadata = metadata
            case ChunkType.SOURCE:
                state.sources.append(payload)
                step.sources.append(payload)
            case ChunkType.FILE:
                state.files.append(payload)
                step.files.append(payload)
            case ChunkType.TOOL_CALL_INPUT_STREAMING_START:
                call_id = payload.get("tool_call_id") or ""
                state.tool_streams_started.add(call_id)
                if name := payload.get("tool_name"):
                    state.tool_names[call_id] = name
            case ChunkType.TOOL_CALL_DELTA:
                return self._on_tool_call_delta(chunk)
            case ChunkType.TOOL_CALL:
                chunk = self._on_tool_call(chunk)
            case ChunkType.TOOL_RESULT:
                state.tool_results.append(payload)
                step.tool_results.append(payload)
            case ChunkType.STEP_FINISH:
                return await self._on_step_finish_chunk(chunk)
            case ChunkType.FINISH:
                if not self._closed:
                    return await self._on_finish_chunk(chunk)
            case ChunkType.ERROR:
                error = as_stream_exception(payload.get("error"), run_id=self.run_id)
                self._error = error
                self._log.warning("error chunk received", error=error.error.message, code=error.error.code.value)
                if self._root_span is not None:
                    self._root_span.set_attributes({"stream.error": error.error.message})
                self._fail(error)
        return [chunk]

    def _reasoning_block(self, block_id: str) -> ReasoningDetail:
        if (detail := self._state.reasoning_details.get(block_id)) is None:
            detail = self._state.reasoning_details[block_id] = ReasoningDetail()
        self._step.add_reasoning_block(block_id, detail)
        return detail

    def _on_tool_call_delta(self, chunk: Chunk) -> list[Chunk]:
        state = self._state
        call_id = chunk.get("tool_call_id") or ""
        first = call_id not in state.tool_args
        state.tool_args.setdefault(call_id, []).append(chunk.get("args_text_delta") or "")
        if name := chunk.get("tool_name") or state.tool_names.get(call_id):
            state.tool_names[call_id] = name
            chunk = chunk.enrich(tool_name=name)
        if not (first and self._tool_call_streaming) or call_id in state.tool_streams_started:
            return [chunk]
        state.tool_streams_started.add(call_id)
        start = Chunk(type=ChunkType.TOOL_CALL_INPUT_STREAMING_START, run_id=chunk.run_id, origin=chunk.origin,
                      payload={"tool_call_id": call_id, "tool_name": name})
        return [start, chunk]

    def _on_tool_call(self, chunk: Chunk) -> Chunk:
        state = self._state
        if (nested := _nested_agent_usage(chunk.get("output"))) is not None:
            self._usage.add(nested)
        call_id = chunk.get("tool_call_id") or ""
        if (fragments := state.tool_args.get(call_id)) and chunk.get("args") is None:
            parsed = parse_partial_json("".join(fragments))
            if parsed.ok:
                chunk = chunk.enrich(args=parsed.value)
        if name := state.tool_names.get(call_id):
            chunk = chunk.enrich(tool_name=name)
        state.tool_calls.append(chunk.payload)
        self._step.tool_calls.append(chunk.payload)
        return chunk

    async def _on_step_finish_chunk(self, chunk: Chunk) -> list[Chunk]:
        state, payload = self._state, chunk.payload
        self._usage.add((payload.get("output") or {}).get("usage"))
        if warnings := (payload.get("step_result") or {}).get("warnings"):
            state.warnings = list(warnings)
        if request := (payload.get("metadata") or {}).get("request"):
            state.request = dict(request)
        step_type: StepType = "tool-result" if state.steps else "initial"
        step = self._step.close(step_type, payload)
        self._log.debug("step finished", step=len(state.steps), step_type=step_type, finish_reason=step.finish_reason)
        if (span := self._open_step_span()) is not None:
            span.set_attributes({"step.type": step_type, "step.finish_reason": step.finish_reason,
                                 **{f"step.usage.{k}": v for k, v in step.usage.items() if v is not None}})
            self._end_step_span()

        out = [chunk]
        if self._on_step_finish is not None:
            try:
                await _call_hook(self._on_step_finish, step)
            except Exception as e:
                err = self._error = self._hook_error(e, "on_step_finish")
                self._fail(err)
                out.append(error_chunk(err, self.run_id))
        state.steps.append(step)
        return out

    async def _on_finish_chunk(self, chunk: Chunk) -> list[Chunk]:
        state, payload = self._state, chunk.payload
        step_result = payload.get("step_result") or {}
        metadata = dict(payload.get("metadata") or {})
        state.finish_reason = step_result.get("reason")
        state.provider_metadata = metadata.pop("provider_metadata", None)
        if request := metadata.pop("request", None):
            state.request = dict(request)
        if warnings := step_result.get("warnings"):
            state.warnings = list(warnings)

        output = payload.get("output") or {}
        self._usage.populate(output.get("usage"))
        chunk = replace(chunk, payload={**payload, "output": {**output, "usage": self._usage.snapshot()}})

        messages = payload.get("messages")
        text: str | None = None
        if self._processors:
            try:
                processed = await self._run_result_processors()
            except TripWire as t:
                self._tripwire, self._tripwire_reason = True, t.reason
                self._log.warning("output blocked by processor", reason=t.reason)
                state.finish_reason = "other"
                self._deferred["object"].resolve(None)
            except ProcessorError as e:
                self._error = e
                self._log.error("output processor failed", error=str(e))
                state.finish_reason = "error"
                self._deferred["object"].resolve(None)
            else:
                text = "\n".join(m.text for m in processed if m.role == "assistant")
                for message in processed:
                    if "structured_output" in message.metadata:
                        self._deferred["object"].resolve(message.metadata["structured_output"])
                messages = messages or [asdict(m) for m in processed]
            if self.schema is None:
                self._deferred["object"].resolve(None)
        state.response = {**metadata, "messages": list(messages or [])}

        self._resolve_all(text)
        self._closed = True
        self._log.info("stream finished", finish_reason=state.finish_reason, steps=len(state.steps),
                       total_tokens=self._usage.total()["total_tokens"])

        out = [chunk]
        if self._on_finish is not None:
            try:
                await _call_hook(self._on_finish, self._finish_event(text))
            except Exception as e:
                err = self._hook_error(e, "on_finish")
                self._error = err
                out.append(error_chunk(err, self.run_id))
        self._record_telemetry(text)
        state.tool_args.clear()
        return out

    # ─────────────────────────────────────────────────────────────────
    # Settlement
    # ─────────────────────────────────────────────────────────────────

    def _resolve_all(self, text: str | None = None) -> None:
        """Resolve every pending result from the buffers. Settled results are left alone."""
        state = self._state
        reasoning = "".join(state.reasoning)
        values: dict[str, Any] = {
            "text": "".join(state.text) if text is None else text,
            "reasoning": reasoning,
            "reasoning_text": reasoning or None,
            "reasoning_details": list(state.reasoning_details.values()),
            "sources": list(state.sources),
            "files": list(state.files),
            "steps": list(state.steps),
            "finish_reason": state.finish_reason,
            "tool_calls": list(state.tool_calls),
            "tool_results": list(state.tool_results),
            "usage": self._usage.snapshot(),
            "total_usage": self._usage.total(),
            "warnings": list(state.warnings),
            "provider_metadata": state.provider_metadata,
            "response": dict(state.response),
            "request": dict(state.request),
        }
        for name, value in values.items():
            self._deferred[name].resolve(value)

    def _fail(self, error: BaseException) -> None:
        """Reject every pending result with `error`."""
        self._closed = True
        for deferred in self._deferred.values():
            deferred.reject(error)
        self._end_span(str(error) or type(error).__name__)

    def _trip(self, reason: str) -> None:
        """End the run as aborted-by-policy: pending results resolve with what was buffered."""
        self._tripwire, self._tripwire_reason = True, reason
        self._closed = True
        self._log.warning("output blocked by processor", reason=reason)
        self._state.finish_reason = "other"
        self._deferred["object"].resolve(None)
        self._resolve_all()
        if self._root_span is not None:
            self._root_span.set_attributes({"stream.tripwire": True, "stream.tripwire_reason": reason})
        self._end_span()

    def _reject_unfinished(self) -> None:
        pending = [d for d in self._deferred.values() if d.is_pending]
        if pending:
            self._log.warning("stream terminated unexpectedly", pending=[d.name for d in pending])
            for deferred in pending:
                deferred.reject(TerminationError(deferred.name, run_id=self.run_id))
        if self._root_span is not None:
            self._end_span("stream terminated before finish" if pending else None)

    def _hook_error(self, exc: Exception, hook: str) -> HookError:
        err = HookError.from_exc(exc, run_id=self.run_id, context=f"{hook} hook failed",
                                 model_id=self.model.model_id or None, provider=self.model.provider or None,
                                 thread_id=self.thread_id, resource_id=self.resource_id)
        self._log.error("hook failed", hook=hook, error=str(exc), error_type=type(exc).__name__)
        return err

    def _finish_event(self, text: str | None) -> FinishEvent:
        state = self._state
        reasoning = "".join(state.reasoning)
        return FinishEvent(
            text="".join(state.text) if text is None else text,
            finish_reason=state.finish_reason,
            usage=self._usage.snapshot(),
            total_usage=self._usage.total(),
            steps=list(state.steps),
            reasoning=reasoning,
            reasoning_text=reasoning or None,
            reasoning_details=list(state.reasoning_details.values()),
            sources=list(state.sources),
            files=list(state.files),
            tool_calls=list(state.tool_calls),
            tool_results=list(state.tool_results),
            static_tool_calls=[tc for tc in state.tool_calls if not _is_dynamic(tc)],
            dynamic_tool_calls=[tc for tc in state.tool_calls if _is_dynamic(tc)],
            static_tool_results=[tr for tr in state.tool_results if not _is_dynamic(tr)],
            dynamic_tool_results=[tr for tr in state.tool_results if _is_dynamic(tr)],
            warnings=list(state.warnings),
            request=dict(state.request),
            response=dict(state.response),
            provider_metadata=state.provider_metadata,
            error=self._error,
            tripwire=self._tripwire,
            tripwire_reason=self._tripwire_reason,
        )

    def _response_messages(self) -> list[ResponseMessage]:
        messages: list[ResponseMessage] = []
        for step in self._state.steps:
            messages += _step_messages(step.text, step.tool_calls, step.tool_results)
        messages += _step_messages("".join(self._step.text), self._step.tool_calls, self._step.tool_results)
        return messages

    # ─────────────────────────────────────────────────────────────────
    # Telemetry
    # ─────────────────────────────────────────────────────────────────

    def _record_telemetry(self, text: str | None) -> None:
        if self._root_span is None:
            return
        state = self._state
        attrs: JsonDict = {f"stream.usage.{k}": v for k, v in self._usage.total().items()}
        if state.provider_metadata is not None:
            attrs["stream.response.provider_metadata"] = orjson.dumps(state.provider_metadata, default=str).decode()
        if state.finish_reason is not None:
            attrs["stream.response.finish_reason"] = state.finish_reason
        if self._telemetry.record_outputs:
            attrs["stream.response.text"] = "".join(state.text) if text is None else text
            if state.tool_calls:
                attrs["stream.response.tool_calls"] = orjson.dumps(state.tool_calls, default=str).decode()
        if self._telemetry.record_inputs and state.request:
            attrs["stream.request"] = orjson.dumps(state.request, default=str).decode()
        if self._tripwire:
            attrs.update({"stream.tripwire": True, "stream.tripwire_reason": self._tripwire_reason or ""})
        self._root_span.set_attributes(attrs)
        self._end_span(str(self._error) if self._error is not None else None)

    def _open_step_span(self) -> Span | None:
        """STEP span for the current turn, opened on first use; None when this run is not traced."""
        if self._tracer is None or not isinstance(self._root_span, Span):
            return None
        if self._step_span is None:
            self._step_span = self._tracer.start_span(
                "agent.step", SpanKind.STEP, {"step.index": len(self._state.steps)}, parent=self._root_span)
        return self._step_span

    def _end_step_span(self, error: str | None = None) -> None:
        span, self._step_span = self._step_span, None
        if span is not None and self._tracer is not None:
            self._tracer.end_span(span, SpanStatus.ERROR if error else SpanStatus.OK, error)

    async def _run_result_processors(self) -> list[ResponseMessage]:
        """Final output-processor pass, under a PROCESSOR span when the run is traced."""
        messages = self._response_messages()
        if self._tracer is None or not isinstance(self._root_span, Span):
            return await self._processors.run_output_processors(messages)
        span = self._tracer.start_span("output.processors", SpanKind.PROCESSOR,
                                       {"processor.count": len(self._processors.processors)}, parent=self._root_span)
        try:
            processed = await self._processors.run_output_processors(messages)
        except TripWire as t:
            span.add_event("tripwire", {"reason": t.reason})
            self._tracer.end_span(span)
            raise
        except ProcessorError as e:
            span.record_error(e.error)
            self._tracer.end_span(span, SpanStatus.ERROR, str(e))
            raise
        self._tracer.end_span(span)
        return processed

    def _end_span(self, error: str | None = None) -> None:
        self._end_step_span(error)
        span, self._root_span = self._root_span, None
        if self._tracer is not None and isinstance(span, Span):
            self._tracer.end_span(span, SpanStatus.ERROR if error else SpanStatus.OK, error)
        elif span is not None:
            span.end()
