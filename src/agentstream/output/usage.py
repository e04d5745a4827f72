"""Token usage accounting.

Usage is a mapping from token category to count. Counts are summed across
steps; the derived total is recomputed from the categories instead of trusting
an upstream-reported total, and excludes cached categories.

Example:
    >>> usage = UsageCounter()
    >>> usage.add({"input_tokens": 10, "output_tokens": 5, "cached_input_tokens": 4})
    >>> usage.add({"input_tokens": 3, "output_tokens": 2})
    >>> usage.total()["total_tokens"]
    20
"""

from __future__ import annotations

from collections.abc import Mapping

__all__ = ["TOTAL_KEYS", "UsageCounter", "total_tokens"]

TOTAL_KEYS = frozenset({"total", "total_tokens", "totalTokens"})


def _counts(usage: Mapping[str, object] | None) -> dict[str, int]:
    if not usage:
        return {}
    return {k: int(v) for k, v in usage.items() if isinstance(v, (int, float)) and not isinstance(v, bool)}


def total_tokens(usage: Mapping[str, int]) -> int:
    """Sum of all categories except totals and `cached*` categories."""
    return sum(v for k, v in usage.items() if k not in TOTAL_KEYS and not k.startswith("cached"))


class UsageCounter:
    """Running per-category token totals for a run."""

    __slots__ = ("_counts",)

    def __init__(self, initial: Mapping[str, object] | None = None) -> None:
        self._counts: dict[str, int] = _counts(initial)

    def __repr__(self) -> str:
        return f"UsageCounter({self._counts})"

    def __bool__(self) -> bool:
        return bool(self._counts)

    def __getitem__(self, key: str) -> int:
        return self._counts.get(key, 0)

    def add(self, usage: Mapping[str, object] | None) -> None:
        """Add each category to the running total. Non-numeric values are ignored."""
        for key, value in _counts(usage).items():
            self._counts[key] = self._counts.get(key, 0) + value

    def populate(self, usage: Mapping[str, object] | None) -> None:
        """Fill categories that are missing or zero; existing counts win."""
        for key, value in _counts(usage).items():
            if not self._counts.get(key):
                self._counts[key] = value

    def snapshot(self) -> dict[str, int]:
        return dict(self._counts)

    def total(self) -> dict[str, int]:
        """Snapshot with `total_tokens` recomputed from the categories."""
        result = {k: v for k, v in self._counts.items() if k not in TOTAL_KEYS}
        result["total_tokens"] = total_tokens(self._counts)
        return result
