"""Single-resolution result box shared between a sync producer and async consumers.

A Deferred starts PENDING and moves exactly once to RESOLVED or REJECTED.
Producer code resolves/rejects synchronously (no await needed); consumers
await the box. Later resolve/reject calls are ignored and report False.

Example:
    >>> text = Deferred[str]("text")
    >>> text.resolve("Hello world")
    True
    >>> text.reject(RuntimeError("late"))  # ignored
    False
    >>> await text
    'Hello world'
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Generator
from enum import StrEnum
from typing import Generic, TypeVar

T = TypeVar("T")

__all__ = ["Deferred", "DeferredStatus"]


class DeferredStatus(StrEnum):
    """Deferred lifecycle states."""
    PENDING = "pending"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class Deferred(Generic[T]):
    """Promise-like box with explicit resolve/reject entry points.

    Transitions only ever go PENDING -> RESOLVED | REJECTED. The wake-up
    event is created lazily, so a Deferred can be built outside a running loop.
    `on_wait` runs whenever a consumer starts waiting on a pending box; the
    owner uses it to start producing lazily.
    """

    __slots__ = ("name", "_status", "_value", "_error", "_event", "_on_wait")

    def __init__(self, name: str = "", *, on_wait: Callable[[], object] | None = None) -> None:
        self.name = name
        self._on_wait = on_wait
        self._status = DeferredStatus.PENDING
        self._value: T | None = None
        self._error: BaseException | None = None
        self._event: asyncio.Event | None = None

    def __repr__(self) -> str:
        return f"Deferred({self.name!r}, status={self._status})"

    @property
    def status(self) -> DeferredStatus:
        return self._status

    @property
    def is_pending(self) -> bool:
        return self._status is DeferredStatus.PENDING

    @property
    def error(self) -> BaseException | None:
        return self._error

    def resolve(self, value: T) -> bool:
        """Resolve with a value. Returns False if already settled."""
        if self._status is not DeferredStatus.PENDING:
            return False
        self._value, self._status = value, DeferredStatus.RESOLVED
        self._wake()
        return True

    def reject(self, error: BaseException) -> bool:
        """Reject with an exception. Returns False if already settled."""
        if self._status is not DeferredStatus.PENDING:
            return False
        self._error, self._status = error, DeferredStatus.REJECTED
        self._wake()
        return True

    def result(self) -> T:
        """Settled value without awaiting. Raises the rejection, or RuntimeError while pending."""
        match self._status:
            case DeferredStatus.RESOLVED:
                return self._value  # type: ignore[return-value]
            case DeferredStatus.REJECTED:
                raise self._error  # type: ignore[misc]
            case _:
                raise RuntimeError(f"Deferred {self.name!r} is still pending")

    async def wait(self) -> T:
        """Wait until settled, then return the value or raise the rejection."""
        if self._status is DeferredStatus.PENDING:
            if self._event is None:
                self._event = asyncio.Event()
            if self._on_wait is not None:
                self._on_wait()
            await self._event.wait()
        return self.result()

    def __await__(self) -> Generator[object, None, T]:
        return self.wait().__await__()

    def _wake(self) -> None:
        if self._event is not None:
            self._event.set()
