"""Chunk vocabulary: the typed envelope every output stage communicates with.

A Chunk is one event of a run. Stages dispatch on `type`, never rewrite it,
and pass through types they do not recognize. Payloads are plain dicts with
snake_case keys; a stage may only enrich a payload (see `Chunk.enrich`).
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

import orjson

from agentstream.foundation.errors import JsonDict


class ChunkType(StrEnum):
    """Known chunk types. `Chunk.type` is a plain str so unknown types survive."""
    START = "start"
    STEP_START = "step-start"
    RAW = "raw"
    RESPONSE_METADATA = "response-metadata"
    TEXT_START = "text-start"
    TEXT_DELTA = "text-delta"
    TEXT_END = "text-end"
    REASONING_START = "reasoning-start"
    REASONING_DELTA = "reasoning-delta"
    REASONING_END = "reasoning-end"
    REASONING_SIGNATURE = "reasoning-signature"
    REDACTED_REASONING = "redacted-reasoning"
    SOURCE = "source"
    FILE = "file"
    TOOL_CALL = "tool-call"
    TOOL_CALL_INPUT_STREAMING_START = "tool-call-input-streaming-start"
    TOOL_CALL_DELTA = "tool-call-delta"
    TOOL_CALL_INPUT_STREAMING_END = "tool-call-input-streaming-end"
    TOOL_RESULT = "tool-result"
    TOOL_ERROR = "tool-error"
    STEP_FINISH = "step-finish"
    FINISH = "finish"
    ERROR = "error"
    ABORT = "abort"
    OBJECT = "object"
    TRIPWIRE = "tripwire"


class ChunkFrom(StrEnum):
    """Logical actor that produced a chunk."""
    AGENT = "AGENT"
    USER = "USER"
    SYSTEM = "SYSTEM"
    WORKFLOW = "WORKFLOW"


@dataclass(slots=True)
class Chunk:
    """One event in an output stream.

    Attributes:
        type: Chunk tag (a ChunkType value, or any string for forward compatibility)
        run_id: Execution the chunk belongs to
        origin: Actor that produced it
        payload: Type-specific data
        object: Partial/final structured value, only on `object` chunks
    """
    type: str
    run_id: str = ""
    origin: ChunkFrom = ChunkFrom.AGENT
    payload: JsonDict = field(default_factory=dict)
    object: Any = None

    def get(self, key: str, default: Any = None) -> Any:
        """Payload lookup shortcut."""
        return self.payload.get(key, default)

    def enrich(self, **extra: Any) -> Chunk:
        """Copy with payload keys filled in where missing or empty. `type` is untouched."""
        filled = {k: v for k, v in extra.items() if self.payload.get(k) in (None, "")}
        return replace(self, payload={**self.payload, **filled}) if filled else self

    def to_dict(self) -> JsonDict:
        """Serialize for transport / logging."""
        result: JsonDict = {"type": self.type, "run_id": self.run_id, "from": self.origin.value, "payload": self.payload}
        if self.type == ChunkType.OBJECT:
            result["object"] = self.object
        return result

    def to_json(self) -> str:
        return orjson.dumps(self.to_dict(), default=str).decode()


# ─────────────────────────────────────────────────────────────────────────────
# Factory Functions
# ─────────────────────────────────────────────────────────────────────────────

def chunk(type: str, run_id: str = "", *, origin: ChunkFrom = ChunkFrom.AGENT, **payload: Any) -> Chunk:  # noqa: A002
    """Create a chunk with the given payload."""
    return Chunk(type=type, run_id=run_id, origin=origin, payload=dict(payload))


def text_delta(text: str, run_id: str = "", *, id: str | None = None) -> Chunk:  # noqa: A002
    """Create a text-delta chunk."""
    payload: JsonDict = {"text": text}
    if id is not None:
        payload["id"] = id
    return Chunk(type=ChunkType.TEXT_DELTA, run_id=run_id, payload=payload)


def object_chunk(value: Any, run_id: str = "") -> Chunk:
    """Create an object chunk carrying a partial or final structured value."""
    return Chunk(type=ChunkType.OBJECT, run_id=run_id, object=value)


def _finish_payload(
    reason: str,
    usage: dict[str, int] | None,
    *,
    warnings: list[Any] | None,
    is_continued: bool,
    logprobs: Any,
    provider_metadata: JsonDict | None,
    request: JsonDict | None,
    response: JsonDict | None,
) -> JsonDict:
    metadata: JsonDict = {"provider_metadata": provider_metadata, "request": request or {}}
    if response:
        metadata.update(response)
    return {
        "step_result": {"reason": reason, "warnings": warnings or [], "is_continued": is_continued, "logprobs": logprobs},
        "output": {"usage": dict(usage or {})},
        "metadata": metadata,
    }


def step_finish_chunk(
    reason: str = "stop",
    usage: dict[str, int] | None = None,
    run_id: str = "",
    *,
    warnings: list[Any] | None = None,
    is_continued: bool = False,
    logprobs: Any = None,
    provider_metadata: JsonDict | None = None,
    request: JsonDict | None = None,
    response: JsonDict | None = None,
) -> Chunk:
    """Create a step-finish chunk. `response` keys (id, model_id, timestamp, ...) land in `metadata`."""
    return Chunk(type=ChunkType.STEP_FINISH, run_id=run_id, payload=_finish_payload(
        reason, usage, warnings=warnings, is_continued=is_continued, logprobs=logprobs,
        provider_metadata=provider_metadata, request=request, response=response))


def finish_chunk(
    reason: str = "stop",
    usage: dict[str, int] | None = None,
    run_id: str = "",
    *,
    warnings: list[Any] | None = None,
    provider_metadata: JsonDict | None = None,
    request: JsonDict | None = None,
    response: JsonDict | None = None,
) -> Chunk:
    """Create a terminal finish chunk."""
    return Chunk(type=ChunkType.FINISH, run_id=run_id, payload=_finish_payload(
        reason, usage, warnings=warnings, is_continued=False, logprobs=None,
        provider_metadata=provider_metadata, request=request, response=response))


def error_chunk(error: Any, run_id: str = "") -> Chunk:
    """Create a terminal error chunk. `error` may be an exception, a string, or a mapping with `message`."""
    return Chunk(type=ChunkType.ERROR, run_id=run_id, payload={"error": error})


def tripwire_chunk(reason: str, run_id: str = "") -> Chunk:
    """Create the chunk emitted when an output processor blocks content."""
    return Chunk(type=ChunkType.TRIPWIRE, run_id=run_id, payload={"tripwire_reason": reason})
