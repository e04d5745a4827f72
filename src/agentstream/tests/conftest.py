"""Shared fixtures: quiet logging, fresh settings, scripted chunk sources."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable

import pytest

from agentstream.foundation.config import clear_settings_cache
from agentstream.io.streaming import Chunk
from agentstream.runtime.observability import NoOpRenderer, configure_logging


async def _scripted(chunks: Iterable[Chunk], error: Exception | None = None) -> AsyncIterator[Chunk]:
    for c in chunks:
        yield c
    if error is not None:
        raise error


@pytest.fixture(autouse=True)
def quiet_logging() -> None:
    configure_logging(renderer=NoOpRenderer())


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch: pytest.MonkeyPatch):
    for key in ("AGENTSTREAM_STREAM_INCLUDE_RAW_CHUNKS", "AGENTSTREAM_STREAM_TOOL_CALL_STREAMING",
                "AGENTSTREAM_TELEMETRY_ENABLED"):
        monkeypatch.delenv(key, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def make_source():
    """Factory for a single-pass async chunk source, optionally failing after the last chunk."""
    return _scripted
