"""JSON type aliases shared across the package.

Recursive slots use Any to avoid Pydantic resolution issues.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Union

JsonPrimitive = Union[str, int, float, bool, None]
JsonValue = Union[JsonPrimitive, list[Any], dict[str, Any]]
JsonDict = dict[str, Any]
JsonMapping = Mapping[str, Any]

__all__ = ["JsonPrimitive", "JsonValue", "JsonDict", "JsonMapping"]
