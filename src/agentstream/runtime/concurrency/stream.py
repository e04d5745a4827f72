"""Async stream combinators used to build derived output views.

Key Operations:
    - filter_stream: Keep items matching a (sync or async) predicate
    - map_stream: Apply a (sync or async) function to each item
    - take_stream: Stop after n items
    - collect_stream: Gather a finite stream into a list
    - drain_stream: Read a stream to the end, optionally routing errors to a callback

Example:
    >>> deltas = filter_stream(full, lambda c: c.type == "text-delta")
    >>> async for text in map_stream(deltas, lambda c: c.payload["text"]):
    ...     print(text, end="")
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable
from typing import Callable, TypeVar

T = TypeVar("T")
U = TypeVar("U")

__all__ = [
    "filter_stream",
    "map_stream",
    "take_stream",
    "collect_stream",
    "drain_stream",
]


async def filter_stream(
    stream: AsyncIterator[T],
    predicate: Callable[[T], bool] | Callable[[T], Awaitable[bool]],
) -> AsyncIterator[T]:
    """Filter stream items by predicate."""
    async for item in stream:
        result = predicate(item)
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            yield item


async def map_stream(
    stream: AsyncIterator[T],
    func: Callable[[T], U] | Callable[[T], Awaitable[U]],
) -> AsyncIterator[U]:
    """Map function over stream items."""
    async for item in stream:
        result = func(item)
        if asyncio.iscoroutine(result):
            result = await result
        yield result  # type: ignore[misc]


async def take_stream(stream: AsyncIterator[T], n: int) -> AsyncIterator[T]:
    """Take first n items from stream."""
    if n <= 0:
        return
    count = 0
    async for item in stream:
        yield item
        count += 1
        if count >= n:
            break


async def collect_stream(stream: AsyncIterator[T]) -> list[T]:
    """Collect all stream items into a list."""
    return [item async for item in stream]


async def drain_stream(
    stream: AsyncIterator[T],
    *,
    on_error: Callable[[Exception], object] | None = None,
) -> int:
    """Read stream to completion, discarding items. Returns the item count.

    Without `on_error` the first exception propagates. With it, the exception
    is handed to the callback (sync or async) and draining stops.
    """
    count = 0
    try:
        async for _ in stream:
            count += 1
    except Exception as e:
        if on_error is None:
            raise
        result = on_error(e)
        if asyncio.iscoroutine(result):
            await result
    return count
