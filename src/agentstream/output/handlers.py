"""Format handlers: incremental decoding of structured output.

A handler turns the growing text of a structured response into partial values
while the model is still writing, and validates the final value once the
stream ends. One handler instance holds the decode state of one run.

Emission policy shared by every handler:
    - never emit when nothing material changed
    - always validate strictly at end of stream
    - a missing or invalid final value is a DecodeError, never silently dropped
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from agentstream.foundation.errors import DecodeError, ErrorCode, StreamError

from .partial_json import ParseState, parse_partial_json
from .schema import OutputFormat, OutputSchema

__all__ = [
    "ArrayFormatHandler",
    "EnumFormatHandler",
    "FinalResult",
    "FormatHandler",
    "ObjectFormatHandler",
    "PartialResult",
    "create_output_handler",
]

NO_OBJECT_MESSAGE = "No object generated: could not parse the response."


@dataclass(frozen=True, slots=True)
class PartialResult:
    """Outcome of feeding accumulated text to a handler."""
    should_emit: bool = False
    emit_value: Any = None
    new_previous: Any = None

    @classmethod
    def skip(cls) -> PartialResult:
        return _SKIP


_SKIP = PartialResult()


@dataclass(frozen=True, slots=True)
class FinalResult:
    """Outcome of end-of-stream validation."""
    success: bool
    value: Any = None
    error: DecodeError | None = None

    @classmethod
    def ok(cls, value: Any) -> FinalResult:
        return cls(True, value)

    @classmethod
    def fail(cls, message: str, code: ErrorCode = ErrorCode.DECODE_ERROR, *, cause: BaseException | None = None) -> FinalResult:
        err = DecodeError(StreamError(message=message, code=code))
        err.__cause__ = cause
        return cls(False, error=err)


class FormatHandler(ABC):
    """Base class for output format handlers."""

    format: OutputFormat

    def __init__(self, schema: OutputSchema) -> None:
        self.schema = schema

    @abstractmethod
    def process_partial(self, accumulated_text: str, previous_object: Any) -> PartialResult:
        """Decide whether the accumulated text yields a new value to emit."""

    @abstractmethod
    def validate_final(self, accumulated_text: str) -> FinalResult:
        """Validate the complete response text once the stream has ended."""

    def _validate(self, value: Any) -> FinalResult:
        try:
            return FinalResult.ok(self.schema.validate(value))
        except ValidationError as e:
            return FinalResult.fail(f"Validation failed: {e}", ErrorCode.VALIDATION_FAILED, cause=e)


class ObjectFormatHandler(FormatHandler):
    """Emits the parsed object whenever it changes."""

    format = OutputFormat.OBJECT

    def process_partial(self, accumulated_text: str, previous_object: Any) -> PartialResult:
        parsed = parse_partial_json(accumulated_text)
        value = parsed.value
        if isinstance(value, (dict, list)) and value != previous_object:
            return PartialResult(parsed.ok, value, value)
        return _SKIP

    def validate_final(self, accumulated_text: str) -> FinalResult:
        # full re-parse so fragment boundaries never affect the result
        parsed = parse_partial_json(accumulated_text)
        if not parsed.ok or parsed.value is None:
            return FinalResult.fail(NO_OBJECT_MESSAGE, ErrorCode.NO_OBJECT_GENERATED)
        return self._validate(parsed.value)


class ArrayFormatHandler(FormatHandler):
    """Unwraps ``{"elements": [...]}`` and emits snapshots of the completed elements.

    The last element is held back while the parse is not yet successful
    unless it is an object that already has keys. The first time any JSON
    structure appears, an empty array is emitted if nothing is complete yet.
    """

    format = OutputFormat.ARRAY

    def __init__(self, schema: OutputSchema) -> None:
        super().__init__(schema)
        self.previous_filtered: list[Any] | None = None

    @staticmethod
    def _filter(elements: list[Any], state: ParseState) -> list[Any]:
        last = len(elements) - 1
        kept = []
        for i, element in enumerate(elements):
            if isinstance(element, dict):
                if element:
                    kept.append(element)
            elif element is not None and (i < last or state is ParseState.SUCCESSFUL):
                kept.append(element)
        return kept

    def process_partial(self, accumulated_text: str, previous_object: Any) -> PartialResult:
        parsed = parse_partial_json(accumulated_text)
        if parsed.value is None or parsed.value == previous_object:
            return _SKIP
        raw = parsed.value.get("elements") if isinstance(parsed.value, dict) else None
        filtered = self._filter(raw if isinstance(raw, list) else [], parsed.state)

        if self.previous_filtered is None:
            self.previous_filtered = []
            if not filtered:
                return PartialResult(True, [], parsed.value)
        if filtered != self.previous_filtered:
            self.previous_filtered = list(filtered)
            return PartialResult(True, filtered, parsed.value)
        return _SKIP

    def validate_final(self, accumulated_text: str) -> FinalResult:
        if self.previous_filtered is None:
            return FinalResult.fail(NO_OBJECT_MESSAGE, ErrorCode.NO_OBJECT_GENERATED)
        return self._validate(self.previous_filtered)


class EnumFormatHandler(FormatHandler):
    """Unwraps ``{"result": "..."}`` and commits early on a single prefix match."""

    format = OutputFormat.ENUM

    def __init__(self, schema: OutputSchema) -> None:
        super().__init__(schema)
        self.previous_result: str | None = None

    def best_match(self, partial: str) -> str | None:
        """The full value if exactly one enum value has this prefix, else the prefix; None if none match."""
        candidates = [v for v in self.schema.enum_values if v.startswith(partial)]
        if not candidates:
            return None
        return candidates[0] if len(candidates) == 1 else partial

    def process_partial(self, accumulated_text: str, previous_object: Any) -> PartialResult:
        value = parse_partial_json(accumulated_text).value
        if not isinstance(value, dict) or not isinstance(partial := value.get("result"), str) or value == previous_object:
            return _SKIP
        match = self.best_match(partial) if partial else None
        if match is None or match == self.previous_result:
            return _SKIP
        self.previous_result = match
        return PartialResult(True, match, value)

    def validate_final(self, accumulated_text: str) -> FinalResult:
        value = parse_partial_json(accumulated_text).value
        if not isinstance(value, dict) or not isinstance(value.get("result"), str):
            return FinalResult.fail("Invalid enum format: expected object with result property")
        return self._validate(value["result"])


_HANDLERS: dict[OutputFormat, type[FormatHandler]] = {
    OutputFormat.OBJECT: ObjectFormatHandler,
    OutputFormat.ARRAY: ArrayFormatHandler,
    OutputFormat.ENUM: EnumFormatHandler,
}


def create_output_handler(schema: OutputSchema) -> FormatHandler:
    """Fresh handler (with empty decode state) for the schema's output format."""
    return _HANDLERS[schema.format](schema)
