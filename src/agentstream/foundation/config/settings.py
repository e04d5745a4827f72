"""Settings for agentstream, read from AGENTSTREAM_* environment variables.

Each concern has its own BaseSettings section with its own prefix; the root
AgentStreamSettings nests them and also reads a local `.env` file. Values a
caller passes to ModelOutput explicitly always win over these defaults.

Example:
    >>> from agentstream.foundation.config import get_settings
    >>> get_settings().stream.include_raw_chunks
    False

    # AGENTSTREAM_STREAM_INCLUDE_RAW_CHUNKS=true   keep provider frames in full_stream
    # AGENTSTREAM_TELEMETRY_ENABLED=true           open a root span per run
    # AGENTSTREAM_LOG_FORMAT=json
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StreamSettings(BaseSettings):
    """Defaults for ModelOutput stream behavior."""

    model_config = SettingsConfigDict(env_prefix="AGENTSTREAM_STREAM_", extra="ignore")

    include_raw_chunks: bool = Field(default=False, description="Keep raw provider frames in the full stream")
    tool_call_streaming: bool = Field(default=True, description="Synthesize input-streaming-start events for tool-call deltas")


class LoggingSettings(BaseSettings):
    """Renderer and threshold for structured logs."""

    model_config = SettingsConfigDict(env_prefix="AGENTSTREAM_LOG_", extra="ignore")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["console", "json", "none"] = "console"


class TelemetrySettings(BaseSettings):
    """What a run records on its root span."""

    model_config = SettingsConfigDict(env_prefix="AGENTSTREAM_TELEMETRY_", extra="ignore")

    enabled: bool = False
    service_name: str = "agentstream"
    record_inputs: bool = True
    record_outputs: bool = Field(default=True, description="Record response text and tool calls on the span")


class AgentStreamSettings(BaseSettings):
    """All settings sections.

    Nested values can also be set through the root prefix with a `__`
    delimiter, e.g. AGENTSTREAM_TELEMETRY__SERVICE_NAME=agent-api.
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTSTREAM_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        validate_default=True,
    )

    debug: bool = Field(default=False, description="Log at DEBUG regardless of the log level setting")
    environment: Literal["development", "staging", "production"] = "development"

    stream: StreamSettings = Field(default_factory=StreamSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)

    @field_validator("environment", mode="before")
    @classmethod
    def _lowercase_environment(cls, v: object) -> object:
        return v.lower() if isinstance(v, str) else v

    @computed_field
    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache(maxsize=1)
def get_settings() -> AgentStreamSettings:
    """Process-wide settings, read once."""
    return AgentStreamSettings()


def clear_settings_cache() -> None:
    """Forget the cached settings so the next `get_settings()` re-reads the environment."""
    get_settings.cache_clear()
