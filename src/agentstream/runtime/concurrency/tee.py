"""Shared-buffer fan-out for a single-pass async source.

A SharedStream wraps one async iterator that cannot be replayed and hands out
any number of StreamBranch cursors over a shared backing buffer. Every branch
starts at the first item and observes the exact order in which the source
produced items, whether it was created before or after other branches started
reading. The source is pulled at most once per item, by whichever branch gets
ahead first; slower branches read from the buffer.

Key Operations:
    - SharedStream.tee(): new independent cursor (O(1), no data copy)
    - StreamBranch.aclose(): stop one reader without touching the source
    - SharedStream.aclose(): tear down the source itself

Example:
    >>> shared = SharedStream(provider_events())
    >>> first, second = shared.tee(), shared.tee()
    >>> async for event in first:
    ...     render(event)
    >>> replay = [e async for e in second]  # same events, same order
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Generic, TypeVar

T = TypeVar("T")

__all__ = ["SharedStream", "StreamBranch"]


class SharedStream(Generic[T]):
    """Single-pass source fanned out through per-branch read cursors.

    Source errors are captured once and re-raised to every branch that reads
    past the last buffered item. Each source fetch runs as its own task, so a
    reader cancelled mid-fetch leaves the fetch in flight for the next reader
    instead of cancelling the source.
    """

    __slots__ = ("_source", "_buffer", "_done", "_error", "_lock", "_pending")

    def __init__(self, source: AsyncIterator[T]) -> None:
        self._source = source
        self._buffer: list[T] = []
        self._done = False
        self._error: Exception | None = None
        self._lock = asyncio.Lock()
        self._pending: asyncio.Future[T] | None = None

    @property
    def done(self) -> bool:
        """Whether the source has been exhausted (or failed)."""
        return self._done

    @property
    def buffered(self) -> int:
        """Number of items pulled from the source so far."""
        return len(self._buffer)

    def tee(self) -> StreamBranch[T]:
        """Create a new branch reading from the first item."""
        return StreamBranch(self)

    async def _fetch(self) -> T:
        return await self._source.__anext__()

    async def _pull(self, index: int) -> bool:
        """Make item `index` available. Returns False once the source is exhausted."""
        async with self._lock:
            while len(self._buffer) <= index and not self._done:
                if self._pending is None:
                    self._pending = asyncio.ensure_future(self._fetch())
                fetch = self._pending
                try:
                    item = await asyncio.shield(fetch)
                except asyncio.CancelledError:
                    if not fetch.cancelled():
                        raise  # this reader was cancelled; the fetch keeps running
                    self._pending, self._done = None, True
                except StopAsyncIteration:
                    self._pending, self._done = None, True
                except Exception as e:
                    self._pending = None
                    self._error, self._done = e, True
                else:
                    self._pending = None
                    self._buffer.append(item)
        if index < len(self._buffer):
            return True
        if self._error is not None:
            raise self._error
        return False

    async def aclose(self) -> None:
        """Cancel any in-flight fetch, then close the source. Branches drain what is already buffered."""
        self._done = True
        if (fetch := self._pending) is not None:
            self._pending = None
            fetch.cancel()
            await asyncio.wait({fetch})
            if not fetch.cancelled():
                fetch.exception()  # mark retrieved: the item or error is discarded with the source
        if (aclose := getattr(self._source, "aclose", None)) is not None:
            await aclose()


class StreamBranch(Generic[T]):
    """Independent read cursor over a SharedStream."""

    __slots__ = ("_shared", "_index", "_closed")

    def __init__(self, shared: SharedStream[T]) -> None:
        self._shared = shared
        self._index = 0
        self._closed = False

    def __aiter__(self) -> StreamBranch[T]:
        return self

    async def __anext__(self) -> T:
        if self._closed:
            raise StopAsyncIteration
        if self._index >= self._shared.buffered and not await self._shared._pull(self._index):
            self._closed = True
            raise StopAsyncIteration
        item = self._shared._buffer[self._index]
        self._index += 1
        return item

    async def aclose(self) -> None:
        """Cancel this reader only; the shared source stays open for other branches."""
        self._closed = True
