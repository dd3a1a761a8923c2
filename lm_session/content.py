"""
GeneratedContent - the structured value produced by (or sent to) a model.

A recursive tagged value: null, bool, number, string, array, or an object
with ordered, unique keys. Instances are immutable and compare structurally;
object key order is part of equality. An optional schema reference rides
along for validation but never affects equality or hashing.
"""

import json
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Iterable, Literal, Mapping, Optional, Union

from pydantic import GetCoreSchemaHandler
from pydantic_core import core_schema

from lm_session.errors import MalformedContent

if TYPE_CHECKING:
    from lm_session.schema import GenerationSchema

Kind = Literal["null", "bool", "number", "string", "array", "object"]


@dataclass(frozen=True)
class GeneratedContent:
    """
    Immutable structured value.

    `value` holds the payload for the kind:
    - null: None
    - bool / number / string: the Python scalar
    - array: tuple of GeneratedContent
    - object: tuple of (name, GeneratedContent) pairs, in key order
    """

    kind: Kind
    value: Any = None
    schema: Optional["GenerationSchema"] = field(default=None, compare=False, repr=False)

    # ─────────────────────────────────────────────────────────────────
    # CONSTRUCTORS
    # ─────────────────────────────────────────────────────────────────

    @classmethod
    def null(cls) -> "GeneratedContent":
        return cls("null")

    @classmethod
    def boolean(cls, value: bool) -> "GeneratedContent":
        return cls("bool", bool(value))

    @classmethod
    def number(cls, value: Union[int, float]) -> "GeneratedContent":
        if isinstance(value, bool):
            raise TypeError("use GeneratedContent.boolean() for bool values")
        return cls("number", value)

    @classmethod
    def string(cls, value: str) -> "GeneratedContent":
        return cls("string", str(value))

    @classmethod
    def array(cls, elements: Iterable[Any]) -> "GeneratedContent":
        return cls("array", tuple(cls.from_value(e) for e in elements))

    @classmethod
    def object(
        cls,
        properties: Union[Mapping[str, Any], Iterable[tuple[str, Any]]] = (),
    ) -> "GeneratedContent":
        """
        Build an object value. Duplicate keys keep their first position and
        the last value, matching how JSON objects decode.
        """
        pairs = properties.items() if isinstance(properties, Mapping) else properties
        merged: dict[str, GeneratedContent] = {}
        for name, value in pairs:
            merged[str(name)] = cls.from_value(value)
        return cls("object", tuple(merged.items()))

    @classmethod
    def from_value(cls, value: Any) -> "GeneratedContent":
        """Convert a plain Python value (as produced by json.loads) to content."""
        if isinstance(value, GeneratedContent):
            return value
        if value is None:
            return cls.null()
        if isinstance(value, bool):
            return cls.boolean(value)
        if isinstance(value, (int, float)):
            return cls.number(value)
        if isinstance(value, str):
            return cls.string(value)
        if isinstance(value, Mapping):
            return cls.object(value)
        if isinstance(value, (list, tuple)):
            return cls.array(value)
        raise TypeError(f"Cannot convert {type(value).__name__} to GeneratedContent")

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> "GeneratedContent":
        """Strictly decode a complete JSON document. Use PartialDecoder for partial input."""
        try:
            return cls.from_value(json.loads(text))
        except json.JSONDecodeError as e:
            raise MalformedContent(e.msg, offset=e.pos) from e

    # ─────────────────────────────────────────────────────────────────
    # ACCESSORS
    # ─────────────────────────────────────────────────────────────────

    @property
    def properties(self) -> Mapping[str, "GeneratedContent"]:
        if self.kind != "object":
            return MappingProxyType({})
        return MappingProxyType(dict(self.value))

    @property
    def elements(self) -> tuple["GeneratedContent", ...]:
        if self.kind != "array":
            return ()
        return self.value

    @property
    def keys(self) -> tuple[str, ...]:
        if self.kind != "object":
            return ()
        return tuple(name for name, _ in self.value)

    def get(self, name: str, default: Optional["GeneratedContent"] = None) -> Optional["GeneratedContent"]:
        if self.kind != "object":
            return default
        for key, value in self.value:
            if key == name:
                return value
        return default

    def __getitem__(self, key: Union[str, int]) -> "GeneratedContent":
        if isinstance(key, str):
            found = self.get(key)
            if found is None:
                raise KeyError(key)
            return found
        if self.kind != "array":
            raise TypeError(f"{self.kind} content is not indexable by position")
        return self.value[key]

    def with_schema(self, schema: "GenerationSchema") -> "GeneratedContent":
        return replace(self, schema=schema)

    # ─────────────────────────────────────────────────────────────────
    # CONVERSIONS
    # ─────────────────────────────────────────────────────────────────

    def to_value(self) -> Any:
        """Plain Python representation (dicts keep key order)."""
        if self.kind == "array":
            return [e.to_value() for e in self.value]
        if self.kind == "object":
            return {name: v.to_value() for name, v in self.value}
        return self.value

    @property
    def json_string(self) -> str:
        return json.dumps(self.to_value(), ensure_ascii=False, separators=(",", ":"))

    @property
    def text(self) -> str:
        """String payload for string content, JSON text for everything else."""
        if self.kind == "string":
            return self.value
        return self.json_string

    def __repr__(self) -> str:
        return f"GeneratedContent({self.json_string})"

    # ─────────────────────────────────────────────────────────────────
    # PYDANTIC INTEGRATION
    # ─────────────────────────────────────────────────────────────────

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type: Any, handler: GetCoreSchemaHandler) -> core_schema.CoreSchema:
        """Validate from plain JSON values, serialize back to them."""
        return core_schema.no_info_plain_validator_function(
            cls.from_value,
            serialization=core_schema.plain_serializer_function_ser_schema(lambda c: c.to_value()),
        )

    @classmethod
    def __get_pydantic_json_schema__(cls, schema: Any, handler: Any) -> dict:
        return {}
