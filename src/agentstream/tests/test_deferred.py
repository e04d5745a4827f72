"""Tests for the Deferred result box.

Validates:
- Single resolution: later resolve/reject calls are ignored
- Waiters are woken on settlement
- on_wait runs only while pending
"""

from __future__ import annotations

import asyncio

import pytest

from agentstream.runtime.concurrency import Deferred, DeferredStatus


# ═════════════════════════════════════════════════════════════════════════════
# Resolution
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_resolve_is_final() -> None:
    """A resolved Deferred ignores later resolve and reject calls."""
    d = Deferred[str]("text")
    assert d.resolve("Hello world")
    assert not d.resolve("other")
    assert not d.reject(RuntimeError("late"))
    assert d.status is DeferredStatus.RESOLVED
    assert await d == "Hello world"


@pytest.mark.asyncio
async def test_reject_is_final() -> None:
    """A rejected Deferred ignores later settlement attempts."""
    d = Deferred[int]("usage")
    err = ValueError("boom")
    assert d.reject(err)
    assert not d.resolve(1)
    assert d.error is err
    with pytest.raises(ValueError, match="boom"):
        await d


def test_result_while_pending_raises() -> None:
    """Reading the result of a pending Deferred raises."""
    d = Deferred[int]("steps")
    assert d.is_pending
    with pytest.raises(RuntimeError, match="still pending"):
        d.result()


# ═════════════════════════════════════════════════════════════════════════════
# Waiting
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_waiters_are_woken() -> None:
    """Every waiter wakes with the value once the Deferred resolves."""
    d = Deferred[str]("text")
    waiters = [asyncio.create_task(d.wait()) for _ in range(3)]
    await asyncio.sleep(0)
    assert not any(w.done() for w in waiters)

    d.resolve("done")
    assert await asyncio.gather(*waiters) == ["done", "done", "done"]


@pytest.mark.asyncio
async def test_on_wait_runs_only_while_pending() -> None:
    """The on_wait callback fires on waits made before settlement only."""
    calls: list[str] = []
    d = Deferred[str]("text", on_wait=lambda: calls.append("wait"))

    waiter = asyncio.create_task(d.wait())
    await asyncio.sleep(0)
    d.resolve("x")
    await waiter
    assert calls == ["wait"]

    assert await d == "x"
    assert calls == ["wait"]


@pytest.mark.asyncio
async def test_on_wait_may_settle_synchronously() -> None:
    """An on_wait callback that settles immediately does not hang the waiter."""
    boxes: list[Deferred[int]] = []
    d: Deferred[int] = Deferred("usage", on_wait=lambda: boxes[0].resolve(7))
    boxes.append(d)
    assert await asyncio.wait_for(d.wait(), timeout=1) == 7
