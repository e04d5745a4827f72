"""Structured output schemas.

An OutputSchema describes the shape the caller asked the model for and knows
how to (a) describe it to a provider as JSON schema and (b) validate the final
decoded value. Three shapes exist:

- object: any pydantic model or pydantic-compatible type
- array:  ``list[X]`` / ``tuple[X, ...]`` / ``set[X]``, sent wrapped as ``{"elements": [...]}``
- enum:   an ``Enum`` of strings, a ``Literal`` of strings or a sequence of strings,
          sent wrapped as ``{"result": "..."}``

A raw JSON schema dict is also accepted; it is sent as-is and final values
pass validation unchanged.

Example:
    >>> class City(BaseModel):
    ...     name: str
    >>> OutputSchema.from_type(list[City]).format
    <OutputFormat.ARRAY: 'array'>
    >>> OutputSchema.from_type(["red", "green", "blue"]).enum_values
    ('red', 'green', 'blue')
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from enum import Enum, StrEnum
from typing import Any, Literal, get_args, get_origin

from pydantic import TypeAdapter

from agentstream.foundation.errors import JsonDict

__all__ = ["OutputFormat", "OutputSchema", "SchemaTransform", "response_format"]

SchemaTransform = Callable[[JsonDict], JsonDict]

_ARRAY_ORIGINS = (list, tuple, set, frozenset)


class OutputFormat(StrEnum):
    """Wire shape of a structured output."""
    OBJECT = "object"
    ARRAY = "array"
    ENUM = "enum"


class OutputSchema:
    """Requested structured output shape plus its validator."""

    __slots__ = ("format", "source", "enum_values", "_adapter", "_raw")

    def __init__(
        self,
        format: OutputFormat,  # noqa: A002
        source: Any,
        *,
        adapter: TypeAdapter[Any] | None = None,
        enum_values: tuple[str, ...] = (),
        raw: JsonDict | None = None,
    ) -> None:
        self.format = format
        self.source = source
        self.enum_values = enum_values
        self._adapter = adapter
        self._raw = raw

    def __repr__(self) -> str:
        return f"OutputSchema({self.format}, {self.source!r})"

    @classmethod
    def from_type(cls, schema: Any) -> OutputSchema:
        """Build from a type, an enum domain, or a raw JSON schema dict."""
        if isinstance(schema, OutputSchema):
            return schema
        if isinstance(schema, dict):
            return cls._from_json_schema(schema)
        origin = get_origin(schema)
        if origin is Literal:
            values = tuple(v for v in get_args(schema) if isinstance(v, str))
            return cls(OutputFormat.ENUM, schema, adapter=TypeAdapter(schema), enum_values=values)
        if origin in _ARRAY_ORIGINS or schema in _ARRAY_ORIGINS:
            args = [a for a in get_args(schema) if a is not Ellipsis]
            item = args[0] if args else Any
            return cls(OutputFormat.ARRAY, schema, adapter=TypeAdapter(list[item]))  # type: ignore[valid-type]

        if isinstance(schema, type) and issubclass(schema, Enum):
            values = tuple(m.value for m in schema if isinstance(m.value, str))
            return cls(OutputFormat.ENUM, schema, adapter=TypeAdapter(schema), enum_values=values)
        if isinstance(schema, Sequence) and not isinstance(schema, str):
            values = tuple(str(v) for v in schema)
            if not values:
                raise ValueError("Enum output needs at least one value")
            return cls(OutputFormat.ENUM, schema, adapter=TypeAdapter(Literal[values]), enum_values=values)  # type: ignore[valid-type]
        return cls(OutputFormat.OBJECT, schema, adapter=TypeAdapter(schema))

    @classmethod
    def _from_json_schema(cls, schema: JsonDict) -> OutputSchema:
        if schema.get("type") == "array":
            return cls(OutputFormat.ARRAY, schema, raw=schema)
        if isinstance(values := schema.get("enum"), list):
            return cls(OutputFormat.ENUM, schema, raw=schema, enum_values=tuple(v for v in values if isinstance(v, str)))
        return cls(OutputFormat.OBJECT, schema, raw=schema)

    def validate(self, value: Any) -> Any:
        """Validate a final decoded value. Raises pydantic.ValidationError on mismatch."""
        if self._adapter is None:
            return value
        return self._adapter.validate_python(value)

    def _base_schema(self) -> JsonDict:
        if self._raw is not None:
            return dict(self._raw)
        if self._adapter is None:
            return {}
        return self._adapter.json_schema()

    def json_schema(self, transform: SchemaTransform | None = None) -> JsonDict:
        """Schema sent to the provider. Arrays and enums are wrapped in a single-field object."""
        base = self._base_schema()
        if transform is not None:
            base = transform(base)
        match self.format:
            case OutputFormat.ARRAY:
                defs = base.pop("$defs", None)
                wrapped: JsonDict = {
                    "type": "object",
                    "properties": {"elements": base},
                    "required": ["elements"],
                    "additionalProperties": False,
                }
                if defs:
                    wrapped["$defs"] = defs
                return wrapped
            case OutputFormat.ENUM:
                return {
                    "type": "object",
                    "properties": {"result": {"type": "string", "enum": list(self.enum_values)}},
                    "required": ["result"],
                    "additionalProperties": False,
                }
            case _:
                return base


def response_format(schema: OutputSchema | None, transform: SchemaTransform | None = None) -> JsonDict:
    """Provider response format: JSON with the wrapped schema, or plain text."""
    if schema is None:
        return {"type": "text"}
    return {"type": "json", "schema": schema.json_schema(transform)}
