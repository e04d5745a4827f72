"""Concurrency primitives for output streaming.

- Deferred: single-resolution result box
- SharedStream / StreamBranch: multi-consumer fan-out over a single-pass source
- Stream combinators: filter, map, take, collect, drain
"""

from .deferred import Deferred, DeferredStatus
from .stream import collect_stream, drain_stream, filter_stream, map_stream, take_stream
from .tee import SharedStream, StreamBranch

__all__ = [
    "Deferred",
    "DeferredStatus",
    "SharedStream",
    "StreamBranch",
    "collect_stream",
    "drain_stream",
    "filter_stream",
    "map_stream",
    "take_stream",
]
