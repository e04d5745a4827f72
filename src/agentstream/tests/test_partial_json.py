"""Tests for the forgiving partial JSON parser."""

from __future__ import annotations

import pytest

from agentstream.output import ParseState, fix_json, parse_partial_json


# ═════════════════════════════════════════════════════════════════════════════
# fix_json
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ('{"elements":[{"na', '{"elements":[{}]}'),
        ('{"result":"gr', '{"result":"gr"}'),
        ('{"a": tr', '{"a": true}'),
        ('{"a": nu', '{"a": null}'),
        ('{"n": 12', '{"n": 12}'),
        ("[1, 2", "[1, 2]"),
        ('{"a": 1, "b', '{"a": 1}'),
        ('{"a": 1, "b":', '{"a": 1}'),
        ('["x", "y', '["x", "y"]'),
        ('{"s": "a\\"b', '{"s": "a\\"b"}'),
        ('{"nested": {"list": [1, {"k": "v', '{"nested": {"list": [1, {"k": "v"}]}}'),
    ],
)
def test_fix_json_closes_open_structures(text: str, expected: str) -> None:
    """Open strings, arrays and objects are closed."""
    assert fix_json(text) == expected


def test_fix_json_keeps_complete_text() -> None:
    """Complete JSON is left as is."""
    assert fix_json('{"a": [1, 2]}') == '{"a": [1, 2]}'


# ═════════════════════════════════════════════════════════════════════════════
# parse_partial_json
# ═════════════════════════════════════════════════════════════════════════════


def test_undefined_input() -> None:
    """None input parses to an undefined result."""
    result = parse_partial_json(None)
    assert result.state is ParseState.UNDEFINED_INPUT
    assert result.value is None
    assert not result.ok


def test_successful_parse() -> None:
    """Valid JSON parses without repair."""
    result = parse_partial_json('{"a": 1}')
    assert result.state is ParseState.SUCCESSFUL
    assert result.value == {"a": 1}


def test_repaired_parse() -> None:
    """Truncated JSON parses after repair."""
    result = parse_partial_json('{"a": [1, 2')
    assert result.state is ParseState.REPAIRED
    assert result.value == {"a": [1, 2]}
    assert result.ok


def test_failed_parse() -> None:
    """Unrepairable text reports a failed parse."""
    result = parse_partial_json("not json")
    assert result.state is ParseState.FAILED
    assert result.value is None
