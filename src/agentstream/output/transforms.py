"""Stream transformers for structured output.

- object_stream_transformer: text-delta chunks -> interleaved `object` chunks
- json_text_transformer: `object` chunks -> incremental JSON text
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

import orjson

from agentstream.foundation.errors import DecodeError
from agentstream.io.streaming import Chunk, ChunkFrom, ChunkType

from .handlers import create_output_handler
from .schema import OutputFormat, OutputSchema

__all__ = ["json_text_transformer", "object_stream_transformer"]


async def _call(fn: Callable[[Any], object] | None, value: Any) -> None:
    if fn is None:
        return
    result = fn(value)
    if asyncio.iscoroutine(result):
        await result


async def object_stream_transformer(
    stream: AsyncIterator[Chunk],
    schema: OutputSchema | None,
    on_finish: Callable[[Any], object] | None = None,
    on_error: Callable[[DecodeError], object] | None = None,
) -> AsyncIterator[Chunk]:
    """Decode structured output from text deltas while passing every chunk through.

    Without a schema the stream is passed through untouched. With one, each
    emitted `object` chunk precedes the text-delta that produced it. At end of
    stream the final value is validated if a `finish` chunk was seen: success
    calls `on_finish(value)`, failure emits an `error` chunk and calls
    `on_error(exc)`. A run that finished with reason "tool-calls" resolves the
    object to None.
    """
    if schema is None:
        async for chunk in stream:
            yield chunk
        return

    handler = create_output_handler(schema)
    text, previous = "", None
    finished = False
    finish_reason: str | None = None
    run_id = ""

    async for chunk in stream:
        run_id = chunk.run_id or run_id
        if chunk.type == ChunkType.FINISH:
            finished = True
            finish_reason = (chunk.get("step_result") or {}).get("reason")
        elif chunk.type == ChunkType.TEXT_DELTA and isinstance(delta := chunk.get("text"), str):
            text += delta
            result = handler.process_partial(text, previous)
            if result.should_emit:
                if result.new_previous is not None:
                    previous = result.new_previous
                yield Chunk(type=ChunkType.OBJECT, run_id=chunk.run_id, origin=chunk.origin, object=result.emit_value)
        yield chunk

    # no finish chunk: the run was cut off, aborted or failed upstream
    if not finished:
        return
    if finish_reason == "tool-calls":
        await _call(on_finish, None)
        return

    final = handler.validate_final(text)
    if final.success:
        await _call(on_finish, final.value)
        return
    if final.error is None:
        err = DecodeError("Structured output failed final validation", run_id=run_id)
    else:
        err = DecodeError(final.error.error.model_copy(update={"run_id": run_id}))
        err.__cause__ = final.error.__cause__
    yield Chunk(type=ChunkType.ERROR, run_id=run_id, origin=ChunkFrom.AGENT, payload={"error": err})
    await _call(on_error, err)


async def json_text_transformer(stream: AsyncIterator[Chunk], schema: OutputSchema | None) -> AsyncIterator[str]:
    """Render `object` chunks as JSON text.

    Arrays stream incrementally: ``[``, then each newly completed element
    (comma-prefixed after the first), then ``]`` at end of stream, so the
    concatenated text is always one valid JSON array. When the first snapshot
    already has elements, the bracket and those elements go out as one piece.
    Any other shape is emitted as a whole JSON document per snapshot.
    """
    is_array = schema is not None and schema.format is OutputFormat.ARRAY
    previous_len = 0
    started = False

    async for chunk in stream:
        if chunk.type != ChunkType.OBJECT or chunk.object is None:
            continue
        if not is_array:
            yield _dumps(chunk.object)
            continue

        elements = chunk.object
        pieces = [("," if i > 0 else "") + _dumps(elements[i]) for i in range(previous_len, len(elements))]
        if not started:
            pieces.insert(0, "[")
            started = True
        if pieces:
            yield "".join(pieces)
        previous_len = len(elements)

    if started:
        yield "]"


def _dumps(value: Any) -> str:
    return orjson.dumps(value, default=str).decode()
