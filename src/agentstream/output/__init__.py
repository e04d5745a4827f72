"""Output - Aggregation and structured decoding of model output streams.

- ModelOutput: aggregator, derived results and consumer views
- partial_json: tolerant parser for incomplete JSON
- OutputSchema / format handlers / transformers: structured output decoding
- Output processors: stream and result hooks that rewrite or block output
- UsageCounter / StepResult: token accounting and step records
"""

from .handlers import (
    ArrayFormatHandler,
    EnumFormatHandler,
    FinalResult,
    FormatHandler,
    ObjectFormatHandler,
    PartialResult,
    create_output_handler,
)
from .model_output import FinishEvent, FullOutput, ModelInfo, ModelOutput, TelemetrySpan
from .partial_json import ParseState, PartialParse, fix_json, parse_partial_json
from .processors import (
    AbortFn,
    OutputProcessor,
    ProcessedPart,
    ProcessorRunner,
    ProcessorState,
    ResponseMessage,
    abort,
)
from .schema import OutputFormat, OutputSchema, SchemaTransform, response_format
from .step import ReasoningDetail, StepBuffer, StepResult, StepType
from .transforms import json_text_transformer, object_stream_transformer
from .usage import TOTAL_KEYS, UsageCounter, total_tokens

__all__ = [
    # Aggregator
    "ModelOutput", "ModelInfo", "FinishEvent", "FullOutput", "TelemetrySpan",
    # Partial JSON
    "ParseState", "PartialParse", "fix_json", "parse_partial_json",
    # Schema & handlers
    "OutputFormat", "OutputSchema", "SchemaTransform", "response_format",
    "FormatHandler", "ObjectFormatHandler", "ArrayFormatHandler", "EnumFormatHandler",
    "PartialResult", "FinalResult", "create_output_handler",
    "object_stream_transformer", "json_text_transformer",
    # Processors
    "OutputProcessor", "ProcessorRunner", "ProcessorState", "ProcessedPart", "ResponseMessage", "AbortFn", "abort",
    # Usage & steps
    "UsageCounter", "TOTAL_KEYS", "total_tokens", "StepResult", "StepBuffer", "StepType", "ReasoningDetail",
]
