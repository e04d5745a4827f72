"""Output processors: pluggable hooks that inspect, rewrite or block output.

A processor implements any subset of two optional hooks:

- ``process_output_stream(part, *, stream_parts, state, abort)`` sees each
  chunk of a full stream and returns it (possibly rewritten) or None to drop it.
- ``process_output_result(messages, *, abort)`` sees the final response
  messages at finish and returns them (possibly rewritten).

Calling ``abort(reason)`` raises TripWire, which ends the run as
aborted-by-policy rather than failed. Any other exception is wrapped in
ProcessorError.

Example:
    >>> class NoSecrets:
    ...     name = "no-secrets"
    ...     async def process_output_stream(self, part, *, stream_parts, state, abort):
    ...         if "password" in part.payload.get("text", ""):
    ...             abort("secret detected")
    ...         return part
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, NoReturn, Protocol, runtime_checkable

from agentstream.foundation.errors import JsonDict, ProcessorError, TripWire

if TYPE_CHECKING:
    from agentstream.io.streaming import Chunk

__all__ = [
    "AbortFn",
    "OutputProcessor",
    "ProcessedPart",
    "ProcessorRunner",
    "ProcessorState",
    "ResponseMessage",
    "abort",
]

AbortFn = Callable[[str | None], NoReturn]


def abort(reason: str | None = None) -> NoReturn:
    """Block output from inside a processor hook."""
    raise TripWire(reason) if reason else TripWire()


@dataclass(slots=True)
class ResponseMessage:
    """One response message handed to `process_output_result`.

    Assistant messages carry ``{"type": "text"}`` and ``{"type": "tool-call"}``
    parts; tool messages carry ``{"type": "tool-result"}`` parts. Structured
    output produced by a processor goes in ``metadata["structured_output"]``.
    """
    role: str
    content: list[JsonDict] = field(default_factory=list)
    metadata: JsonDict = field(default_factory=dict)

    @property
    def text(self) -> str:
        return "".join(p.get("text", "") for p in self.content if p.get("type") == "text")


@runtime_checkable
class OutputProcessor(Protocol):
    """Protocol for output processors. Both hooks are optional."""

    name: str

    async def process_output_stream(
        self,
        part: Chunk,
        *,
        stream_parts: list[Chunk],
        state: JsonDict,
        abort: AbortFn,
    ) -> Chunk | None:
        """Return the part (possibly rewritten), or None to drop it."""
        ...

    async def process_output_result(self, messages: list[ResponseMessage], *, abort: AbortFn) -> list[ResponseMessage]:
        """Return the final messages (possibly rewritten)."""
        ...


def _has_hook(obj: object, name: str) -> bool:
    """Whether the object's own class hierarchy (not the Protocol) implements the hook."""
    attr = getattr(obj, name, None)
    if attr is None or not callable(attr):
        return False
    for cls in type(obj).__mro__:
        if cls.__name__ in ("OutputProcessor", "Protocol", "object"):
            continue
        if name in cls.__dict__:
            return True
    return False


def _name_of(processor: object) -> str:
    return getattr(processor, "name", None) or type(processor).__name__


@dataclass(slots=True)
class ProcessorState:
    """Per-processor scratch state for one full-stream pipeline."""
    stream_parts: list[Any] = field(default_factory=list)
    custom: JsonDict = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ProcessedPart:
    """Result of running a chunk through every stream processor."""
    part: Chunk | None
    blocked: bool = False
    reason: str | None = None


class ProcessorRunner:
    """Runs output processors in order."""

    __slots__ = ("processors", "run_id")

    def __init__(self, processors: Sequence[object], *, run_id: str = "") -> None:
        self.processors = tuple(processors)
        self.run_id = run_id

    def __bool__(self) -> bool:
        return bool(self.processors)

    @staticmethod
    def new_states() -> dict[str, ProcessorState]:
        return {}

    async def process_part(self, part: Chunk, states: dict[str, ProcessorState]) -> ProcessedPart:
        """Pass one chunk through every stream hook. Stops at the first drop or tripwire."""
        current = part
        for processor in self.processors:
            if not _has_hook(processor, "process_output_stream"):
                continue
            name = _name_of(processor)
            state = states.setdefault(name, ProcessorState())
            state.stream_parts.append(current)
            try:
                result = processor.process_output_stream(  # type: ignore[attr-defined]
                    current, stream_parts=list(state.stream_parts), state=state.custom, abort=abort)
                if asyncio.iscoroutine(result):
                    result = await result
            except TripWire as t:
                return ProcessedPart(None, blocked=True, reason=t.reason)
            except Exception as e:
                raise ProcessorError.from_exc(e, run_id=self.run_id, context=f"Output processor {name} failed",
                                              processor=name) from e
            if result is None:
                return ProcessedPart(None)
            current = result
        return ProcessedPart(current)

    async def run_output_processors(self, messages: list[ResponseMessage]) -> list[ResponseMessage]:
        """Pass the final messages through every result hook. TripWire propagates."""
        for processor in self.processors:
            if not _has_hook(processor, "process_output_result"):
                continue
            name = _name_of(processor)
            try:
                result = processor.process_output_result(messages, abort=abort)  # type: ignore[attr-defined]
                if asyncio.iscoroutine(result):
                    result = await result
            except TripWire:
                raise
            except Exception as e:
                raise ProcessorError.from_exc(e, run_id=self.run_id, context=f"Output processor {name} failed",
                                              processor=name) from e
            if result is not None:
                messages = list(result)
        return messages
