"""Configuration management using pydantic-settings.

Provides environment-based configuration with type safety and validation.
"""

from .settings import (
    AgentStreamSettings,
    LoggingSettings,
    StreamSettings,
    TelemetrySettings,
    clear_settings_cache,
    get_settings,
)

__all__ = [
    "AgentStreamSettings",
    "LoggingSettings",
    "StreamSettings",
    "TelemetrySettings",
    "clear_settings_cache",
    "get_settings",
]
