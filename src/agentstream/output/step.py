"""Step records: one complete model turn within a run.

StepBuffer collects everything a turn produces between `step-start` and
`step-finish`; `StepBuffer.close` turns it into an immutable StepResult and
the buffer is reset for the next turn.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from agentstream.foundation.errors import JsonDict

__all__ = ["ReasoningDetail", "StepBuffer", "StepResult", "StepType"]

StepType = Literal["initial", "tool-result"]


@dataclass(slots=True)
class ReasoningDetail:
    """One reasoning block, keyed by its id in the producer's stream."""
    text: str = ""
    type: str = "reasoning"
    provider_metadata: JsonDict | None = None

    def to_dict(self) -> JsonDict:
        return {"type": self.type, "text": self.text, "provider_metadata": self.provider_metadata}


@dataclass(frozen=True, slots=True)
class StepResult:
    """Immutable record of one finished step."""
    step_type: StepType
    text: str = ""
    reasoning: str = ""
    reasoning_details: tuple[ReasoningDetail, ...] = ()
    sources: tuple[Any, ...] = ()
    files: tuple[Any, ...] = ()
    tool_calls: tuple[JsonDict, ...] = ()
    tool_results: tuple[JsonDict, ...] = ()
    warnings: tuple[Any, ...] = ()
    finish_reason: str | None = None
    is_continued: bool = False
    logprobs: Any = None
    usage: dict[str, int] = field(default_factory=dict)
    provider_metadata: JsonDict | None = None
    request: JsonDict = field(default_factory=dict)
    response: JsonDict = field(default_factory=dict)

    @property
    def reasoning_text(self) -> str | None:
        return self.reasoning or None


@dataclass(slots=True)
class StepBuffer:
    """Mutable per-step scratch buffers."""
    text: list[str] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)
    reasoning_details: dict[str, ReasoningDetail] = field(default_factory=dict)
    sources: list[Any] = field(default_factory=list)
    files: list[Any] = field(default_factory=list)
    tool_calls: list[JsonDict] = field(default_factory=list)
    tool_results: list[JsonDict] = field(default_factory=list)

    def add_reasoning_block(self, block_id: str, detail: ReasoningDetail) -> None:
        self.reasoning_details.setdefault(block_id, detail)

    def close(self, step_type: StepType, payload: JsonDict) -> StepResult:
        """Build the StepResult for a `step-finish` payload and reset the buffers."""
        step_result = payload.get("step_result") or {}
        metadata = dict(payload.get("metadata") or {})
        provider_metadata = metadata.pop("provider_metadata", None)
        request = metadata.pop("request", None) or {}
        response = {**metadata, "messages": list(payload.get("messages") or [])}
        details = tuple(self.reasoning_details.values())
        result = StepResult(
            step_type=step_type,
            text="".join(self.text),
            reasoning="".join(self.reasoning),
            reasoning_details=details,
            sources=tuple(self.sources),
            files=tuple(self.files),
            tool_calls=tuple(self.tool_calls),
            tool_results=tuple(self.tool_results),
            warnings=tuple(step_result.get("warnings") or ()),
            finish_reason=step_result.get("reason"),
            is_continued=bool(step_result.get("is_continued")),
            logprobs=step_result.get("logprobs"),
            usage=dict((payload.get("output") or {}).get("usage") or {}),
            provider_metadata=provider_metadata,
            request=request,
            response=response,
        )
        self.reset()
        return result

    def reset(self) -> None:
        self.text = []
        self.reasoning = []
        self.reasoning_details = {}
        self.sources = []
        self.files = []
        self.tool_calls = []
        self.tool_results = []
