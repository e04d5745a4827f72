"""Foundation - Core building blocks for agentstream.

Contains: error handling and config.
"""

from __future__ import annotations

__all__ = [
    # Errors
    "ErrorCode", "StreamError", "StreamException", "classify_exception", "as_stream_exception",
    "DecodeError", "HookError", "ProcessorError", "ProviderError", "TerminationError", "TripWire",
    "JsonDict", "JsonMapping", "JsonPrimitive", "JsonValue",
    # Config
    "AgentStreamSettings", "get_settings", "clear_settings_cache",
    "StreamSettings", "LoggingSettings", "TelemetrySettings",
]


def __getattr__(name: str):
    """Lazy imports to avoid circular dependencies."""
    if name in ("ErrorCode", "StreamError", "StreamException", "classify_exception", "as_stream_exception",
                "DecodeError", "HookError", "ProcessorError", "ProviderError", "TerminationError", "TripWire",
                "JsonDict", "JsonMapping", "JsonPrimitive", "JsonValue"):
        from . import errors
        return getattr(errors, name)

    if name in ("AgentStreamSettings", "get_settings", "clear_settings_cache",
                "StreamSettings", "LoggingSettings", "TelemetrySettings"):
        from . import config
        return getattr(config, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
