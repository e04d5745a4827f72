"""Standardized error handling for output streams.

Provides error codes, a structured error model, and the exception hierarchy
surfaced to callers through `error` chunks and rejected results.
Uses Pydantic for validation and serialization.
"""

from __future__ import annotations

import traceback
from enum import StrEnum
from functools import lru_cache
from typing import Annotated, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
)

from .types import JsonDict


class ErrorCode(StrEnum):
    """Standard error codes for stream failures.

    Used for programmatic error handling by orchestration code.
    """
    DECODE_ERROR = "DECODE_ERROR"
    NO_OBJECT_GENERATED = "NO_OBJECT_GENERATED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    HOOK_FAILED = "HOOK_FAILED"
    PROCESSOR_FAILED = "PROCESSOR_FAILED"
    TERMINATED = "TERMINATED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    UNKNOWN = "UNKNOWN"


# Flattened pattern -> code mapping, ordered for priority
_PATTERN_CODES: dict[str, ErrorCode] = {
    "validation": ErrorCode.VALIDATION_FAILED,
    "json": ErrorCode.DECODE_ERROR,
    "decode": ErrorCode.DECODE_ERROR,
    "parse": ErrorCode.DECODE_ERROR,
    "terminated": ErrorCode.TERMINATED,
    "cancel": ErrorCode.TERMINATED,
    "timeout": ErrorCode.PROVIDER_ERROR,
    "connection": ErrorCode.PROVIDER_ERROR,
    "rate": ErrorCode.PROVIDER_ERROR,
}
_PATTERN_KEYS = tuple(_PATTERN_CODES.keys())


@lru_cache(maxsize=256)
def _classify_cached(exc_key: str) -> ErrorCode:
    """Cached classification by exception signature."""
    haystack = exc_key.lower()
    for pattern in _PATTERN_KEYS:
        if pattern in haystack:
            return _PATTERN_CODES[pattern]
    return ErrorCode.UNKNOWN


def classify_exception(exc: BaseException) -> ErrorCode:
    """Map exception to error code via its type or pattern matching on name/message."""
    if isinstance(exc, StreamException):
        return exc.error.code
    return _classify_cached(f"{type(exc).__name__} {exc}")


class StreamError(BaseModel):
    """Structured error for a failed run or a failed derived result.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        run_id: Run the error belongs to (empty when unknown)
        recoverable: Whether a retry by the orchestration layer might succeed
        details: Optional detailed information (e.g., stack trace)
        context: Contextual identifiers (model, provider, thread, resource)
    """

    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
        validate_default=True,
        json_schema_extra={
            "title": "Stream Error",
            "description": "Structured error from an output stream",
            "examples": [{
                "message": "No object generated: could not parse the response.",
                "code": "NO_OBJECT_GENERATED",
                "run_id": "run-1",
                "recoverable": False,
            }],
        },
    )

    message: Annotated[str, Field(min_length=1, description="Human-readable error message")]
    code: ErrorCode = Field(default=ErrorCode.UNKNOWN, description="Machine-readable error classification")
    run_id: str = Field(default="", description="Run identifier")
    recoverable: bool = Field(default=False, description="Whether retry might succeed")
    details: str | None = Field(default=None, repr=False, description="Optional detailed error info")
    context: JsonDict = Field(default_factory=dict, description="Contextual identifiers")

    @field_validator("message", mode="before")
    @classmethod
    def _ensure_message(cls, v: object) -> str:
        """Accept exceptions and mappings with a `message` key."""
        if isinstance(v, BaseException):
            return str(v) or type(v).__name__
        if isinstance(v, dict) and "message" in v:
            return str(v["message"])
        return v if isinstance(v, str) else str(v)

    @computed_field
    @property
    def severity(self) -> str:
        """Error severity level for logging/display."""
        if self.code in (ErrorCode.TERMINATED, ErrorCode.DECODE_ERROR, ErrorCode.NO_OBJECT_GENERATED):
            return "warning"
        return "error"

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        *,
        run_id: str = "",
        code: ErrorCode | None = None,
        context: str = "",
        include_trace: bool = False,
        **ctx: object,
    ) -> Self:
        """Create from exception with auto-classification."""
        return cls(
            message=f"{context}: {exc}" if context else (str(exc) or type(exc).__name__),
            code=code or classify_exception(exc),
            run_id=run_id,
            details=traceback.format_exc() if include_trace else None,
            context={k: v for k, v in ctx.items() if v is not None},
        )

    def render(self) -> str:
        """Format error for display."""
        parts = [f"{self.message} [{self.code}]"]
        if self.run_id:
            parts.append(f" (run {self.run_id})")
        if self.context:
            parts.append(" " + ", ".join(f"{k}={v}" for k, v in sorted(self.context.items())))
        if self.details:
            parts.append(f"\n\nDetails:\n{self.details}")
        return "".join(parts)

    __str__ = render


class StreamException(Exception):
    """Exception wrapping a StreamError for raising and rejecting results."""

    code: ErrorCode = ErrorCode.UNKNOWN

    def __init__(self, error: StreamError | str, *, run_id: str = "", **ctx: object) -> None:
        if isinstance(error, str):
            error = StreamError(
                message=error or "Unknown error",
                code=self.code,
                run_id=run_id,
                context={k: v for k, v in ctx.items() if v is not None},
            )
        self.error = error
        super().__init__(error.message)

    @property
    def run_id(self) -> str:
        return self.error.run_id

    @classmethod
    def from_exc(cls, exc: BaseException, *, run_id: str = "", context: str = "", **ctx: object) -> Self:
        """Wrap an arbitrary exception, keeping it as the cause."""
        err = cls(StreamError.from_exception(exc, run_id=run_id, code=cls.code, context=context, **ctx))
        err.__cause__ = exc
        return err


class DecodeError(StreamException):
    """Structured output could not be parsed or failed final validation."""

    code = ErrorCode.DECODE_ERROR


class HookError(StreamException):
    """A side-effect hook (on_step_finish / on_finish) raised."""

    code = ErrorCode.HOOK_FAILED


class ProcessorError(StreamException):
    """An output processor raised something other than a tripwire."""

    code = ErrorCode.PROCESSOR_FAILED


class ProviderError(StreamException):
    """Error reported by the upstream producer through an `error` chunk."""

    code = ErrorCode.PROVIDER_ERROR


class TerminationError(StreamException):
    """Stream ended without a terminal chunk while a result was still pending."""

    code = ErrorCode.TERMINATED

    def __init__(self, result_name: str, *, run_id: str = "") -> None:
        self.result_name = result_name
        super().__init__(f"Stream {result_name} terminated unexpectedly", run_id=run_id)


class TripWire(Exception):
    """Raised by an output processor to block content. Not an error: the run ends aborted-by-policy."""

    __slots__ = ("reason",)

    def __init__(self, reason: str = "Output processor blocked content") -> None:
        self.reason = reason
        super().__init__(reason)


def as_stream_exception(value: object, *, run_id: str = "") -> StreamException:
    """Normalize an `error` chunk payload (exception, str, or mapping) into a StreamException."""
    match value:
        case StreamException():
            return value
        case BaseException():
            return ProviderError.from_exc(value, run_id=run_id)
        case {"message": message}:
            return ProviderError(str(message), run_id=run_id)
        case None:
            return ProviderError("Unknown error", run_id=run_id)
        case _:
            return ProviderError(str(value), run_id=run_id)
