"""Tests for foundation types.

Validates:
- Chunk enrichment and serialization
- Usage accumulation and derived totals
- Step buffer closing
- Error classification and normalization
- Environment-driven settings
"""

from __future__ import annotations

import orjson
import pytest

from agentstream.foundation.config import get_settings
from agentstream.foundation.errors import (
    DecodeError,
    ErrorCode,
    ProviderError,
    StreamError,
    TerminationError,
    as_stream_exception,
    classify_exception,
)
from agentstream.io.streaming import ChunkFrom, chunk, finish_chunk, object_chunk, step_finish_chunk, text_delta
from agentstream.output import StepBuffer, UsageCounter, total_tokens
from agentstream.output.step import ReasoningDetail


# ═════════════════════════════════════════════════════════════════════════════
# Chunks
# ═════════════════════════════════════════════════════════════════════════════


def test_enrich_fills_only_missing_keys() -> None:
    """enrich() adds payload keys without overwriting existing ones."""
    c = chunk("tool-call", tool_call_id="c1", tool_name="")
    enriched = c.enrich(tool_name="search", tool_call_id="other", args={})
    assert enriched.payload == {"tool_call_id": "c1", "tool_name": "search", "args": {}}
    assert enriched.type == "tool-call"
    assert c.payload["tool_name"] == ""
    assert c.enrich(tool_call_id="x") is c


def test_chunk_serialization() -> None:
    """Chunks serialize to their wire form with type, run id and payload."""
    data = orjson.loads(object_chunk({"a": 1}, run_id="r1").to_json())
    assert data == {"type": "object", "run_id": "r1", "from": "AGENT", "payload": {}, "object": {"a": 1}}
    assert "object" not in text_delta("x").to_dict()
    assert chunk("start", origin=ChunkFrom.WORKFLOW).to_dict()["from"] == "WORKFLOW"


def test_finish_payload_shape() -> None:
    """Finish chunks carry step_result, output and metadata sections."""
    c = finish_chunk("length", {"input_tokens": 1}, "r1", warnings=["w"], request={"b": 1}, response={"id": "x"})
    assert c.payload["step_result"]["reason"] == "length"
    assert c.payload["output"] == {"usage": {"input_tokens": 1}}
    assert c.payload["metadata"] == {"provider_metadata": None, "request": {"b": 1}, "id": "x"}


# ═════════════════════════════════════════════════════════════════════════════
# Usage
# ═════════════════════════════════════════════════════════════════════════════


def test_usage_add_and_total() -> None:
    """Usage counters sum per key and report a total."""
    usage = UsageCounter()
    usage.add({"input_tokens": 10, "output_tokens": 5, "cached_input_tokens": 4, "totalTokens": 19})
    usage.add({"input_tokens": 3, "output_tokens": 2, "flag": True, "note": "x"})
    assert usage.snapshot() == {"input_tokens": 13, "output_tokens": 7, "cached_input_tokens": 4, "totalTokens": 19}
    assert usage.total() == {"input_tokens": 13, "output_tokens": 7, "cached_input_tokens": 4, "total_tokens": 20}
    assert usage["missing"] == 0


def test_usage_populate_keeps_existing() -> None:
    """populate() only fills keys no step has reported."""
    usage = UsageCounter({"input_tokens": 5, "output_tokens": 0})
    usage.populate({"input_tokens": 99, "output_tokens": 3, "reasoning_tokens": 2})
    assert usage.snapshot() == {"input_tokens": 5, "output_tokens": 3, "reasoning_tokens": 2}


def test_total_tokens_ignores_totals_and_cached() -> None:
    """total_tokens sums input and output counts only."""
    assert total_tokens({"a": 1, "total": 50, "total_tokens": 50, "cached_x": 9, "b": 2}) == 3
    assert not UsageCounter()


# ═════════════════════════════════════════════════════════════════════════════
# Steps
# ═════════════════════════════════════════════════════════════════════════════


def test_step_buffer_close_resets() -> None:
    """Closing a step returns its result and empties the buffer."""
    buf = StepBuffer()
    buf.text += ["a", "b"]
    buf.reasoning.append("hmm")
    buf.add_reasoning_block("r1", ReasoningDetail(text="hmm"))
    buf.tool_calls.append({"tool_call_id": "c1"})
    payload = step_finish_chunk("tool-calls", {"input_tokens": 2}, warnings=["w"], is_continued=True,
                                provider_metadata={"p": 1}, request={"r": 1}, response={"id": "s1"}).payload

    step = buf.close("initial", payload)
    assert step.text == "ab"
    assert step.reasoning_text == "hmm"
    assert step.reasoning_details[0].to_dict() == {"type": "reasoning", "text": "hmm", "provider_metadata": None}
    assert step.finish_reason == "tool-calls"
    assert step.is_continued
    assert step.warnings == ("w",)
    assert step.provider_metadata == {"p": 1}
    assert step.request == {"r": 1}
    assert step.response == {"id": "s1", "messages": []}
    assert step.usage == {"input_tokens": 2}
    assert buf.text == [] and buf.tool_calls == [] and buf.reasoning_details == {}


# ═════════════════════════════════════════════════════════════════════════════
# Errors
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.parametrize(
    ("exc", "code"),
    [
        (ValueError("validation failed for field"), ErrorCode.VALIDATION_FAILED),
        (ValueError("Expecting value: line 1 (json)"), ErrorCode.DECODE_ERROR),
        (TimeoutError("read timeout"), ErrorCode.PROVIDER_ERROR),
        (ConnectionError("reset"), ErrorCode.PROVIDER_ERROR),
        (RuntimeError("weird"), ErrorCode.UNKNOWN),
        (DecodeError("x"), ErrorCode.DECODE_ERROR),
    ],
)
def test_classify_exception(exc: BaseException, code: ErrorCode) -> None:
    """Exceptions map to error codes by type."""
    assert classify_exception(exc) is code


def test_termination_error() -> None:
    """TerminationError names the result that never settled."""
    err = TerminationError("usage", run_id="r9")
    assert err.result_name == "usage"
    assert err.error.render() == "Stream usage terminated unexpectedly [TERMINATED] (run r9)"
    assert err.error.severity == "warning"


def test_as_stream_exception_normalizes_payloads() -> None:
    """Error payloads of any shape become a StreamException."""
    original = DecodeError("bad")
    assert as_stream_exception(original) is original
    wrapped = as_stream_exception(OSError("connection refused"), run_id="r1")
    assert isinstance(wrapped, ProviderError)
    assert wrapped.run_id == "r1"
    assert isinstance(wrapped.__cause__, OSError)
    assert str(as_stream_exception({"message": "quota"})) == "quota"
    assert str(as_stream_exception(None)) == "Unknown error"


def test_stream_error_message_coercion() -> None:
    """StreamError turns exceptions and mappings into trimmed message text."""
    assert StreamError(message=KeyError("k")).message == "'k'"
    assert StreamError(message={"message": "m"}).message == "m"
    assert StreamError(message="  padded  ").message == "padded"


# ═════════════════════════════════════════════════════════════════════════════
# Settings
# ═════════════════════════════════════════════════════════════════════════════


def test_settings_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """AGENTSTREAM_* variables populate the settings sections."""
    monkeypatch.setenv("AGENTSTREAM_STREAM_INCLUDE_RAW_CHUNKS", "true")
    monkeypatch.setenv("AGENTSTREAM_TELEMETRY_RECORD_OUTPUTS", "false")
    monkeypatch.setenv("AGENTSTREAM_ENVIRONMENT", "PRODUCTION")
    settings = get_settings()
    assert settings.stream.include_raw_chunks
    assert not settings.telemetry.record_outputs
    assert settings.is_production


def test_settings_are_cached() -> None:
    """get_settings() returns one instance until the cache is cleared."""
    assert get_settings() is get_settings()
