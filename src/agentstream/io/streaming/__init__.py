"""Streaming chunk vocabulary shared by every output stage."""

from .chunk import (
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

__all__ = [
    "Chunk",
    "ChunkFrom",
    "ChunkType",
    "chunk",
    "error_chunk",
    "finish_chunk",
    "object_chunk",
    "step_finish_chunk",
    "text_delta",
    "tripwire_chunk",
]
