"""Unified error handling for agentstream.

- ErrorCode: Standard error codes for stream failures
- StreamError/StreamException: Structured errors and exceptions
- DecodeError, HookError, ProcessorError, ProviderError, TerminationError: error taxonomy
- TripWire: processor-initiated, non-error termination
"""

from .errors import (
    DecodeError,
    ErrorCode,
    HookError,
    ProcessorError,
    ProviderError,
    StreamError,
    StreamException,
    TerminationError,
    TripWire,
    as_stream_exception,
    classify_exception,
)
from .types import JsonDict, JsonMapping, JsonPrimitive, JsonValue

__all__ = [
    # Core errors
    "ErrorCode", "StreamError", "StreamException", "classify_exception", "as_stream_exception",
    # Taxonomy
    "DecodeError", "HookError", "ProcessorError", "ProviderError", "TerminationError", "TripWire",
    # JSON aliases
    "JsonDict", "JsonMapping", "JsonPrimitive", "JsonValue",
]
