"""Forgiving parser for JSON text that is still being generated.

`fix_json` walks the text with a character-level state machine, remembers the
last index at which the text was a valid prefix, cuts there and appends the
closers for whatever is still open (strings, objects, arrays, partial
`true`/`false`/`null` literals). Object keys without a value are dropped.

`parse_partial_json` tries a strict parse first and falls back to the repaired
text, tagging the result with how it was obtained.

Example:
    >>> fix_json('{"elements":[{"na')
    '{"elements":[{}]}'
    >>> parse_partial_json('{"a": tr')
    PartialParse(value={'a': True}, state=<ParseState.REPAIRED: 'repaired-parse'>)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import orjson

__all__ = ["ParseState", "PartialParse", "fix_json", "parse_partial_json"]


class ParseState(StrEnum):
    """How a partial parse was obtained."""
    UNDEFINED_INPUT = "undefined-input"
    SUCCESSFUL = "successful-parse"
    REPAIRED = "repaired-parse"
    FAILED = "failed-parse"


@dataclass(frozen=True, slots=True)
class PartialParse:
    value: Any
    state: ParseState

    @property
    def ok(self) -> bool:
        """Whether a value was produced (strictly or after repair)."""
        return self.state in (ParseState.SUCCESSFUL, ParseState.REPAIRED)


class _S(StrEnum):
    ROOT = "root"
    FINISH = "finish"
    STRING = "string"
    STRING_ESCAPE = "string-escape"
    LITERAL = "literal"
    NUMBER = "number"
    OBJECT_START = "object-start"
    OBJECT_KEY = "object-key"
    OBJECT_AFTER_KEY = "object-after-key"
    OBJECT_BEFORE_VALUE = "object-before-value"
    OBJECT_AFTER_VALUE = "object-after-value"
    OBJECT_AFTER_COMMA = "object-after-comma"
    ARRAY_START = "array-start"
    ARRAY_AFTER_VALUE = "array-after-value"
    ARRAY_AFTER_COMMA = "array-after-comma"


_OBJECT_STATES = frozenset({_S.OBJECT_START, _S.OBJECT_KEY, _S.OBJECT_AFTER_KEY, _S.OBJECT_BEFORE_VALUE,
                            _S.OBJECT_AFTER_VALUE, _S.OBJECT_AFTER_COMMA})
_ARRAY_STATES = frozenset({_S.ARRAY_START, _S.ARRAY_AFTER_VALUE, _S.ARRAY_AFTER_COMMA})
_LITERALS = ("true", "false", "null")
_DIGITS = frozenset("0123456789")


def fix_json(text: str) -> str:
    """Close an incomplete JSON text so that it parses, keeping only its valid prefix."""
    stack: list[_S] = [_S.ROOT]
    last_valid = -1
    literal_start = 0

    def value_start(ch: str, i: int, swap: _S) -> None:
        nonlocal last_valid, literal_start
        match ch:
            case '"':
                nxt = _S.STRING
            case "t" | "f" | "n":
                nxt, literal_start = _S.LITERAL, i
            case "-":
                stack[-1:] = [swap, _S.NUMBER]
                return
            case _ if ch in _DIGITS:
                nxt = _S.NUMBER
            case "{":
                nxt = _S.OBJECT_START
            case "[":
                nxt = _S.ARRAY_START
            case _:
                return
        last_valid = i
        stack[-1:] = [swap, nxt]

    def after_object_value(ch: str, i: int) -> None:
        nonlocal last_valid
        if ch == ",":
            stack[-1] = _S.OBJECT_AFTER_COMMA
        elif ch == "}":
            last_valid = i
            stack.pop()

    def after_array_value(ch: str, i: int) -> None:
        nonlocal last_valid
        if ch == ",":
            stack[-1] = _S.ARRAY_AFTER_COMMA
        elif ch == "]":
            last_valid = i
            stack.pop()

    def close_scalar(ch: str, i: int) -> None:
        # a number or literal just ended; the char may also close its container
        stack.pop()
        if stack[-1] is _S.OBJECT_AFTER_VALUE:
            after_object_value(ch, i)
        elif stack[-1] is _S.ARRAY_AFTER_VALUE:
            after_array_value(ch, i)

    for i, ch in enumerate(text):
        match stack[-1]:
            case _S.ROOT:
                value_start(ch, i, _S.FINISH)
            case _S.OBJECT_START:
                if ch == '"':
                    stack[-1] = _S.OBJECT_KEY
                elif ch == "}":
                    last_valid = i
                    stack.pop()
            case _S.OBJECT_AFTER_COMMA:
                if ch == '"':
                    stack[-1] = _S.OBJECT_KEY
            case _S.OBJECT_KEY:
                if ch == '"':
                    stack[-1] = _S.OBJECT_AFTER_KEY
            case _S.OBJECT_AFTER_KEY:
                if ch == ":":
                    stack[-1] = _S.OBJECT_BEFORE_VALUE
            case _S.OBJECT_BEFORE_VALUE:
                value_start(ch, i, _S.OBJECT_AFTER_VALUE)
            case _S.OBJECT_AFTER_VALUE:
                after_object_value(ch, i)
            case _S.STRING:
                if ch == '"':
                    stack.pop()
                    last_valid = i
                elif ch == "\\":
                    stack.append(_S.STRING_ESCAPE)
                else:
                    last_valid = i
            case _S.STRING_ESCAPE:
                stack.pop()
                last_valid = i
            case _S.ARRAY_START:
                if ch == "]":
                    last_valid = i
                    stack.pop()
                else:
                    last_valid = i
                    value_start(ch, i, _S.ARRAY_AFTER_VALUE)
            case _S.ARRAY_AFTER_VALUE:
                if ch == ",":
                    stack[-1] = _S.ARRAY_AFTER_COMMA
                elif ch == "]":
                    last_valid = i
                    stack.pop()
                else:
                    last_valid = i
            case _S.ARRAY_AFTER_COMMA:
                value_start(ch, i, _S.ARRAY_AFTER_VALUE)
            case _S.NUMBER:
                if ch in _DIGITS:
                    last_valid = i
                elif ch in "eE-+.":
                    pass
                elif ch in ",}]":
                    close_scalar(ch, i)
                else:
                    stack.pop()
            case _S.LITERAL:
                partial = text[literal_start:i + 1]
                if any(lit.startswith(partial) for lit in _LITERALS):
                    last_valid = i
                else:
                    close_scalar(ch, i)
            case _S.FINISH:
                pass

    result = [text[:last_valid + 1]]
    for state in reversed(stack):
        if state is _S.STRING:
            result.append('"')
        elif state in _OBJECT_STATES:
            result.append("}")
        elif state in _ARRAY_STATES:
            result.append("]")
        elif state is _S.LITERAL:
            partial = text[literal_start:]
            result.extend(lit[len(partial):] for lit in _LITERALS if lit.startswith(partial))
    return "".join(result)


def _loads(text: str) -> tuple[bool, Any]:
    try:
        return True, orjson.loads(text)
    except orjson.JSONDecodeError:
        return False, None


def parse_partial_json(text: str | None) -> PartialParse:
    """Parse possibly-incomplete JSON text: strict first, then repaired, else failed."""
    if text is None:
        return PartialParse(None, ParseState.UNDEFINED_INPUT)
    ok, value = _loads(text)
    if ok:
        return PartialParse(value, ParseState.SUCCESSFUL)
    ok, value = _loads(fix_json(text))
    if ok:
        return PartialParse(value, ParseState.REPAIRED)
    return PartialParse(None, ParseState.FAILED)
