"""Agentstream - Aggregation and structured decoding for agentic LLM output streams.

Wraps the chunk stream of one model run, buffers everything it produces
(text, reasoning, tool calls, steps, usage), decodes structured output while
the model is still writing, and exposes the result as awaitable values plus
any number of independently readable stream views.

Quick Start:
    >>> from agentstream import ModelOutput
    >>> out = ModelOutput(provider_chunks(), run_id="run-1")
    >>> async for delta in out.text_stream:
    ...     print(delta, end="")
    >>> await out.text
    'Hello world'

Structured Output:
    >>> from pydantic import BaseModel
    >>> class City(BaseModel):
    ...     name: str
    >>> out = ModelOutput(provider_chunks(), run_id="run-2", output=list[City])
    >>> async for city in out.element_stream:
    ...     print(city["name"])
    >>> await out.object
    [City(name='Paris'), City(name='Rome')]

Output Processors:
    >>> class NoSecrets:
    ...     name = "no-secrets"
    ...     async def process_output_stream(self, part, *, stream_parts, state, abort):
    ...         if "password" in part.payload.get("text", ""):
    ...             abort("secret detected")
    ...         return part
    >>> out = ModelOutput(provider_chunks(), run_id="run-3", output_processors=[NoSecrets()])

Observability:
    >>> from agentstream import configure_observability
    >>> configure_observability()  # logging + tracing from AGENTSTREAM_* settings
"""

from __future__ import annotations

__version__ = "0.1.0"

# Aggregator
from .output import FinishEvent, FullOutput, ModelInfo, ModelOutput, TelemetrySpan

# Chunk vocabulary
from .io import (
    Chunk,
    ChunkFrom,
    ChunkType,
    chunk,
    error_chunk,
    finish_chunk,
    object_chunk,
    step_finish_chunk,
    text_delta,
    tripwire_chunk,
)

# Structured output
from .output import (
    OutputFormat,
    OutputSchema,
    ParseState,
    PartialParse,
    create_output_handler,
    parse_partial_json,
    response_format,
)

# Processors
from .output import OutputProcessor, ResponseMessage, abort

# Usage & steps
from .output import StepResult, UsageCounter

# Errors
from .foundation.errors import (
    DecodeError,
    ErrorCode,
    HookError,
    ProcessorError,
    ProviderError,
    StreamError,
    StreamException,
    TerminationError,
    TripWire,
)

# Config
from .foundation.config import AgentStreamSettings, clear_settings_cache, get_settings

# Concurrency
from .runtime.concurrency import Deferred, DeferredStatus, SharedStream, StreamBranch

# Observability
from .runtime.observability import (
    configure_logging,
    configure_observability,
    configure_tracing,
    get_logger,
    get_tracer,
)

__all__ = [
    "__version__",
    # Aggregator
    "ModelOutput", "ModelInfo", "FinishEvent", "FullOutput", "TelemetrySpan",
    # Chunks
    "Chunk", "ChunkFrom", "ChunkType", "chunk", "error_chunk", "finish_chunk", "object_chunk",
    "step_finish_chunk", "text_delta", "tripwire_chunk",
    # Structured output
    "OutputFormat", "OutputSchema", "ParseState", "PartialParse", "create_output_handler",
    "parse_partial_json", "response_format",
    # Processors
    "OutputProcessor", "ResponseMessage", "abort",
    # Usage & steps
    "StepResult", "UsageCounter",
    # Errors
    "DecodeError", "ErrorCode", "HookError", "ProcessorError", "ProviderError", "StreamError",
    "StreamException", "TerminationError", "TripWire",
    # Config
    "AgentStreamSettings", "clear_settings_cache", "get_settings",
    # Concurrency
    "Deferred", "DeferredStatus", "SharedStream", "StreamBranch",
    # Observability
    "configure_logging", "configure_observability", "configure_tracing", "get_logger", "get_tracer",
]
