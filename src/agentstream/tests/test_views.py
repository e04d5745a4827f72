"""Tests for structured-output views: object_stream, element_stream and JSON text_stream."""

from __future__ import annotations

from enum import Enum

import pytest
from pydantic import BaseModel

from agentstream.foundation.errors import DecodeError, ErrorCode
from agentstream.io.streaming import ChunkType, finish_chunk, step_finish_chunk, text_delta
from agentstream.output import ModelOutput, OutputSchema, json_text_transformer, object_stream_transformer
from agentstream.runtime.concurrency import collect_stream


class City(BaseModel):
    name: str


class Mood(str, Enum):
    HAPPY = "happy"
    HUNGRY = "hungry"
    SAD = "sad"


CITY_FRAGMENTS = ['{"elements":[{"na', 'me":"A"},{"name":', '"B"}]}']


def city_run(make_source, **kwargs) -> ModelOutput:
    chunks = [text_delta(f) for f in CITY_FRAGMENTS] + [step_finish_chunk(), finish_chunk()]
    return ModelOutput(make_source(chunks), run_id="r1", output=list[City], **kwargs)


# ═════════════════════════════════════════════════════════════════════════════
# Array Output
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_array_object_stream(make_source) -> None:
    """object_stream yields growing array snapshots."""
    out = city_run(make_source)
    snapshots = await collect_stream(out.object_stream)
    assert snapshots == [[], [{"name": "A"}], [{"name": "A"}, {"name": "B"}]]
    assert await out.object == [City(name="A"), City(name="B")]


@pytest.mark.asyncio
async def test_element_stream_delivers_each_element_once(make_source) -> None:
    """element_stream yields each element once."""
    out = city_run(make_source)
    assert await collect_stream(out.element_stream) == [{"name": "A"}, {"name": "B"}]


@pytest.mark.asyncio
async def test_array_text_stream_is_valid_json(make_source) -> None:
    """Concatenated array text is one valid JSON document."""
    out = city_run(make_source)
    pieces = await collect_stream(out.text_stream)
    assert pieces == ["[", '{"name":"A"}', ',{"name":"B"}', "]"]
    assert "".join(pieces) == '[{"name":"A"},{"name":"B"}]'


@pytest.mark.asyncio
async def test_object_chunks_precede_their_text_delta(make_source) -> None:
    """Object chunks come before the text delta that produced them."""
    out = city_run(make_source)
    types = [c.type async for c in out.full_stream]
    assert types == ["object", "text-delta", "object", "text-delta", "object", "text-delta",
                     "step-finish", "finish"]


@pytest.mark.asyncio
async def test_views_share_one_upstream_read(make_source) -> None:
    """All views share a single read of the source."""
    pulls = 0

    async def counted():
        nonlocal pulls
        async for c in make_source([text_delta(f) for f in CITY_FRAGMENTS] + [finish_chunk()]):
            pulls += 1
            yield c

    out = ModelOutput(counted(), run_id="r1", output=list[City])
    elements = await collect_stream(out.element_stream)
    text = "".join(await collect_stream(out.text_stream))
    raw = await collect_stream(out.tee_stream())
    assert len(elements) == 2
    assert text == '[{"name":"A"},{"name":"B"}]'
    assert len(raw) == 4
    assert pulls == 4


# ═════════════════════════════════════════════════════════════════════════════
# Object & Enum Output
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_object_output(make_source) -> None:
    """Object output resolves to the validated model."""
    out = ModelOutput(make_source([text_delta('{"name":"Par'), text_delta('is"}'), finish_chunk()]),
                      run_id="r1", output=City)
    assert await collect_stream(out.object_stream) == [{"name": "Par"}, {"name": "Paris"}]
    assert await out.object == City(name="Paris")
    assert await out.text == '{"name":"Paris"}'


@pytest.mark.asyncio
async def test_object_text_stream_is_raw_text(make_source) -> None:
    """Object output keeps the raw text in text_stream."""
    out = ModelOutput(make_source([text_delta('{"name":'), text_delta('"Rome"}'), finish_chunk()]),
                      run_id="r1", output=City)
    assert await collect_stream(out.text_stream) == ['{"name":', '"Rome"}']


@pytest.mark.asyncio
async def test_enum_output_commits_early(make_source) -> None:
    """Enum output commits before the text is complete."""
    out = ModelOutput(make_source([text_delta('{"result":"hu'), text_delta('ngry"}'), finish_chunk()]),
                      run_id="r1", output=Mood)
    assert await collect_stream(out.object_stream) == ["hungry"]
    assert await out.object is Mood.HUNGRY


@pytest.mark.asyncio
async def test_enum_output_ambiguous_prefix(make_source) -> None:
    """An ambiguous enum prefix is emitted before the value commits."""
    out = ModelOutput(make_source([text_delta('{"result":"h'), text_delta('a'), text_delta('ppy"}'), finish_chunk()]),
                      run_id="r1", output=["happy", "hungry", "sad"])
    assert await collect_stream(out.object_stream) == ["h", "happy"]
    assert await out.object == "happy"


# ═════════════════════════════════════════════════════════════════════════════
# Decode Failures
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_unparseable_output_is_decode_error(make_source) -> None:
    """Text that is not JSON rejects the object with a DecodeError."""
    out = ModelOutput(make_source([text_delta("I can't help with that"), finish_chunk()]), run_id="r1", output=City)
    chunks = [c async for c in out.full_stream]
    assert [c.type for c in chunks] == ["text-delta", "finish", "error"]
    err = chunks[-1].payload["error"]
    assert isinstance(err, DecodeError)
    assert err.error.code is ErrorCode.NO_OBJECT_GENERATED
    assert err.run_id == "r1"

    with pytest.raises(DecodeError):
        await out.object
    assert await out.text == "I can't help with that"
    assert await out.finish_reason == "stop"


@pytest.mark.asyncio
async def test_schema_mismatch_is_validation_error(make_source) -> None:
    """JSON that fails the schema rejects the object."""
    out = ModelOutput(make_source([text_delta('{"title": "x"}'), finish_chunk()]), run_id="r1", output=City)
    await out.consume_stream()
    with pytest.raises(DecodeError) as exc:
        await out.object
    assert exc.value.error.code is ErrorCode.VALIDATION_FAILED


@pytest.mark.asyncio
async def test_tool_calls_finish_resolves_object_none(make_source) -> None:
    """A tool-calls finish resolves the object to None."""
    out = ModelOutput(make_source([finish_chunk("tool-calls")]), run_id="r1", output=City)
    assert await out.object is None


# ═════════════════════════════════════════════════════════════════════════════
# Transformers
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_transformer_without_schema_passes_through(make_source) -> None:
    """Without a schema the transformer forwards chunks unchanged."""
    chunks = [text_delta("a"), finish_chunk()]
    assert await collect_stream(object_stream_transformer(make_source(chunks), None)) == chunks


@pytest.mark.asyncio
async def test_transformer_without_finish_does_not_validate(make_source) -> None:
    """No final validation runs when the stream has no finish chunk."""
    finished: list[object] = []
    errors: list[object] = []
    stream = object_stream_transformer(make_source([text_delta("nope")]), OutputSchema.from_type(City),
                                       on_finish=finished.append, on_error=errors.append)
    assert [c.type for c in await collect_stream(stream)] == ["text-delta"]
    assert finished == [] and errors == []


@pytest.mark.asyncio
async def test_json_text_transformer_whole_documents(make_source) -> None:
    """Non-array snapshots render as whole JSON documents."""
    out = ModelOutput(make_source([text_delta('{"name":"A'), text_delta('B"}'), finish_chunk()]),
                      run_id="r1", output=City)
    texts = await collect_stream(json_text_transformer(out.full_stream, out.schema))
    assert texts == ['{"name":"A"}', '{"name":"AB"}']


@pytest.mark.asyncio
async def test_json_text_transformer_first_snapshot_with_elements(make_source) -> None:
    """A first snapshot with elements is emitted as one piece."""
    out = ModelOutput(make_source([text_delta('{"elements":["x","y"]}'), finish_chunk()]),
                      run_id="r1", output=list[str])
    assert await collect_stream(out.text_stream) == ['["x","y"', "]"]
    assert [c.type async for c in out.full_stream if c.type == ChunkType.OBJECT] == ["object"]
