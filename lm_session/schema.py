"""
GenerationSchema - describes the permitted shape of GeneratedContent.

Used two ways:
- serialized to JSON Schema and sent to the provider as a generation hint
- validating decoded content (tool arguments, structured responses)

Schemas are built explicitly with the classmethod builders, from a
{name: type} description (from_fields), or from a pydantic model (from_model).
There is no reflection step beyond what pydantic already exposes.
"""

import re
import types
import typing
from typing import Any, Iterable, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict

from lm_session.content import GeneratedContent
from lm_session.errors import SchemaViolation

SchemaType = Literal[
    "string", "number", "integer", "boolean", "array", "object", "any_of", "null"
]


class SchemaProperty(BaseModel):
    """One named property of an object schema."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: "GenerationSchema"
    required: bool = True
    description: Optional[str] = None


class GenerationSchema(BaseModel):
    """
    A node in a schema tree.

    An `any_of` node with no alternatives is unconstrained (accepts anything);
    that is what an untyped JSON Schema fragment ({}) decodes to.
    """

    model_config = ConfigDict(frozen=True)

    type: SchemaType
    description: Optional[str] = None
    title: Optional[str] = None
    properties: tuple[SchemaProperty, ...] = ()
    items: Optional["GenerationSchema"] = None
    alternatives: tuple["GenerationSchema", ...] = ()
    enum: Optional[tuple[str, ...]] = None
    pattern: Optional[str] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    min_items: Optional[int] = None
    max_items: Optional[int] = None

    # ─────────────────────────────────────────────────────────────────
    # BUILDERS
    # ─────────────────────────────────────────────────────────────────

    @classmethod
    def string(
        cls,
        description: Optional[str] = None,
        enum: Optional[Iterable[str]] = None,
        pattern: Optional[str] = None,
    ) -> "GenerationSchema":
        return cls(
            type="string",
            description=description,
            enum=tuple(enum) if enum is not None else None,
            pattern=pattern,
        )

    @classmethod
    def number(
        cls,
        description: Optional[str] = None,
        minimum: Optional[float] = None,
        maximum: Optional[float] = None,
    ) -> "GenerationSchema":
        return cls(type="number", description=description, minimum=minimum, maximum=maximum)

    @classmethod
    def integer(
        cls,
        description: Optional[str] = None,
        minimum: Optional[float] = None,
        maximum: Optional[float] = None,
    ) -> "GenerationSchema":
        return cls(type="integer", description=description, minimum=minimum, maximum=maximum)

    @classmethod
    def boolean(cls, description: Optional[str] = None) -> "GenerationSchema":
        return cls(type="boolean", description=description)

    @classmethod
    def null(cls) -> "GenerationSchema":
        return cls(type="null")

    @classmethod
    def array(
        cls,
        items: "GenerationSchema",
        description: Optional[str] = None,
        min_items: Optional[int] = None,
        max_items: Optional[int] = None,
    ) -> "GenerationSchema":
        return cls(
            type="array",
            items=items,
            description=description,
            min_items=min_items,
            max_items=max_items,
        )

    @classmethod
    def object(
        cls,
        properties: Iterable[Union[SchemaProperty, tuple]] = (),
        description: Optional[str] = None,
        title: Optional[str] = None,
    ) -> "GenerationSchema":
        """
        Build an object schema.

        Properties may be SchemaProperty instances or tuples of
        (name, schema) / (name, schema, required) / (name, schema, required, description).
        """
        props = []
        for prop in properties:
            if isinstance(prop, SchemaProperty):
                props.append(prop)
            else:
                name, schema, *rest = prop
                required = rest[0] if len(rest) > 0 else True
                desc = rest[1] if len(rest) > 1 else None
                props.append(SchemaProperty(name=name, type=schema, required=required, description=desc))

        names = [p.name for p in props]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate property names in object schema: {names}")

        return cls(type="object", properties=tuple(props), description=description, title=title)

    @classmethod
    def any_of(cls, *choices: "GenerationSchema", description: Optional[str] = None) -> "GenerationSchema":
        return cls(type="any_of", alternatives=tuple(choices), description=description)

    @classmethod
    def from_fields(
        cls,
        fields: Mapping[str, Any],
        description: Optional[str] = None,
        title: Optional[str] = None,
    ) -> "GenerationSchema":
        """
        Walk a {name: type} description into an object schema.

        Values may be GenerationSchema, a Python type (str, int, float, bool),
        list[X], Optional[X] (makes the property optional), a nested mapping
        (nested object), or a pydantic model class.
        """
        props = []
        for name, annotation in fields.items():
            schema, required = _schema_for_annotation(annotation)
            props.append(SchemaProperty(name=name, type=schema, required=required))
        return cls.object(props, description=description, title=title)

    @classmethod
    def from_model(cls, model: type[BaseModel]) -> "GenerationSchema":
        """Derive a schema from a pydantic model class via its JSON Schema."""
        return cls.from_json_schema(model.model_json_schema())

    # ─────────────────────────────────────────────────────────────────
    # JSON SCHEMA
    # ─────────────────────────────────────────────────────────────────

    def to_json_schema(self) -> dict:
        """Serialize to JSON Schema for provider requests."""
        if self.type == "any_of":
            if not self.alternatives:
                out: dict[str, Any] = {}
            else:
                out = {"anyOf": [c.to_json_schema() for c in self.alternatives]}
        elif self.type == "object":
            out = {
                "type": "object",
                "properties": {},
                "required": [p.name for p in self.properties if p.required],
                "additionalProperties": False,
            }
            for prop in self.properties:
                child = prop.type.to_json_schema()
                if prop.description and "description" not in child:
                    child["description"] = prop.description
                out["properties"][prop.name] = child
        elif self.type == "array":
            out = {"type": "array", "items": self.items.to_json_schema() if self.items else {}}
            if self.min_items is not None:
                out["minItems"] = self.min_items
            if self.max_items is not None:
                out["maxItems"] = self.max_items
        else:
            out = {"type": self.type}
            if self.enum is not None:
                out["enum"] = list(self.enum)
            if self.pattern is not None:
                out["pattern"] = self.pattern
            if self.minimum is not None:
                out["minimum"] = self.minimum
            if self.maximum is not None:
                out["maximum"] = self.maximum

        if self.title:
            out["title"] = self.title
        if self.description:
            out["description"] = self.description
        return out

    @classmethod
    def from_json_schema(cls, document: Mapping[str, Any]) -> "GenerationSchema":
        """Decode a JSON Schema document, resolving local $ref into $defs."""
        defs = dict(document.get("$defs", {}))
        defs.update(document.get("definitions", {}))
        return _decode_node(document, defs, depth=0)


SchemaProperty.model_rebuild()
GenerationSchema.model_rebuild()


# ─────────────────────────────────────────────────────────────────────
# JSON SCHEMA DECODING
# ─────────────────────────────────────────────────────────────────────

_MAX_REF_DEPTH = 32


def _decode_node(node: Mapping[str, Any], defs: Mapping[str, Any], depth: int) -> GenerationSchema:
    if depth > _MAX_REF_DEPTH:
        raise ValueError("JSON Schema nesting too deep (recursive $ref?)")

    description = node.get("description")
    title = node.get("title")

    if "$ref" in node:
        name = node["$ref"].rsplit("/", 1)[-1]
        if name not in defs:
            raise ValueError(f"Unresolved $ref: {node['$ref']}")
        return _decode_node(defs[name], defs, depth + 1)

    for key in ("anyOf", "oneOf"):
        if key in node:
            choices = [_decode_node(c, defs, depth + 1) for c in node[key]]
            return GenerationSchema.any_of(*choices, description=description)

    node_type = node.get("type")
    if isinstance(node_type, list):
        choices = [_decode_node({**node, "type": t}, defs, depth + 1) for t in node_type]
        return GenerationSchema.any_of(*choices, description=description)

    if node_type is None:
        if "properties" in node:
            node_type = "object"
        elif "enum" in node:
            node_type = "string"
        else:
            return GenerationSchema.any_of(description=description)

    if node_type == "object":
        required = set(node.get("required", []))
        props = [
            SchemaProperty(
                name=name,
                type=_decode_node(child, defs, depth + 1),
                required=name in required,
                description=child.get("description"),
            )
            for name, child in node.get("properties", {}).items()
        ]
        return GenerationSchema.object(props, description=description, title=title)

    if node_type == "array":
        items = node.get("items", {})
        return GenerationSchema.array(
            _decode_node(items, defs, depth + 1),
            description=description,
            min_items=node.get("minItems"),
            max_items=node.get("maxItems"),
        )

    if node_type in ("number", "integer"):
        return GenerationSchema(
            type=node_type,
            description=description,
            minimum=node.get("minimum"),
            maximum=node.get("maximum"),
        )

    if node_type == "string":
        enum = node.get("enum")
        return GenerationSchema.string(
            description=description,
            enum=[str(e) for e in enum] if enum is not None else None,
            pattern=node.get("pattern"),
        )

    if node_type == "boolean":
        return GenerationSchema.boolean(description=description)

    if node_type == "null":
        return GenerationSchema.null()

    raise ValueError(f"Unsupported JSON Schema type: {node_type}")


def _schema_for_annotation(annotation: Any) -> tuple[GenerationSchema, bool]:
    """Map a field annotation to (schema, required)."""
    if isinstance(annotation, GenerationSchema):
        return annotation, True
    if isinstance(annotation, Mapping):
        return GenerationSchema.from_fields(annotation), True
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return GenerationSchema.from_model(annotation), True

    origin = typing.get_origin(annotation)
    args = typing.get_args(annotation)

    if origin is Union or origin is types.UnionType:
        non_null = [a for a in args if a is not type(None)]
        if len(non_null) == 1:
            schema, _ = _schema_for_annotation(non_null[0])
            return schema, False
        return GenerationSchema.any_of(*(_schema_for_annotation(a)[0] for a in args)), True

    if origin in (list, tuple):
        item = args[0] if args else Any
        return GenerationSchema.array(_schema_for_annotation(item)[0]), True

    if origin is Literal:
        return GenerationSchema.string(enum=[str(a) for a in args]), True

    simple = {
        str: GenerationSchema.string,
        int: GenerationSchema.integer,
        float: GenerationSchema.number,
        bool: GenerationSchema.boolean,
        type(None): GenerationSchema.null,
    }
    if annotation in simple:
        return simple[annotation](), True
    if annotation is Any:
        return GenerationSchema.any_of(), True

    raise TypeError(f"Cannot build a schema for annotation {annotation!r}")


# ─────────────────────────────────────────────────────────────────────
# VALIDATION
# ─────────────────────────────────────────────────────────────────────


def validate(
    schema: GenerationSchema,
    content: GeneratedContent,
    allow_unknown_fields: bool = True,
) -> GeneratedContent:
    """
    Check content against schema. Returns the content with the schema attached.

    Unknown object fields are preserved but not validated unless
    allow_unknown_fields is False.

    Raises:
        SchemaViolation: naming the offending path (e.g. "items[2].name")
    """
    _check(schema, content, "", allow_unknown_fields)
    return content.with_schema(schema)


def _join(path: str, name: str) -> str:
    return f"{path}.{name}" if path else name


def _check(schema: GenerationSchema, content: GeneratedContent, path: str, allow_unknown: bool) -> None:
    kind = content.kind

    if schema.type == "any_of":
        if not schema.alternatives:
            return
        for choice in schema.alternatives:
            try:
                _check(choice, content, path, allow_unknown)
                return
            except SchemaViolation:
                continue
        raise SchemaViolation(path, f"{kind} value matches none of {len(schema.alternatives)} alternatives")

    if schema.type == "null":
        if kind != "null":
            raise SchemaViolation(path, f"expected null, got {kind}")
        return

    if schema.type == "boolean":
        if kind != "bool":
            raise SchemaViolation(path, f"expected boolean, got {kind}")
        return

    if schema.type in ("number", "integer"):
        if kind != "number":
            raise SchemaViolation(path, f"expected {schema.type}, got {kind}")
        value = content.value
        if schema.type == "integer" and not (isinstance(value, int) or value.is_integer()):
            raise SchemaViolation(path, f"expected integer, got {value}")
        if schema.minimum is not None and value < schema.minimum:
            raise SchemaViolation(path, f"{value} is below minimum {schema.minimum}")
        if schema.maximum is not None and value > schema.maximum:
            raise SchemaViolation(path, f"{value} is above maximum {schema.maximum}")
        return

    if schema.type == "string":
        if kind != "string":
            raise SchemaViolation(path, f"expected string, got {kind}")
        if schema.enum is not None and content.value not in schema.enum:
            raise SchemaViolation(path, f"{content.value!r} is not one of {list(schema.enum)}")
        if schema.pattern is not None and not re.search(schema.pattern, content.value):
            raise SchemaViolation(path, f"{content.value!r} does not match pattern {schema.pattern}")
        return

    if schema.type == "array":
        if kind != "array":
            raise SchemaViolation(path, f"expected array, got {kind}")
        count = len(content.elements)
        if schema.min_items is not None and count < schema.min_items:
            raise SchemaViolation(path, f"expected at least {schema.min_items} items, got {count}")
        if schema.max_items is not None and count > schema.max_items:
            raise SchemaViolation(path, f"expected at most {schema.max_items} items, got {count}")
        if schema.items is not None:
            for i, element in enumerate(content.elements):
                _check(schema.items, element, f"{path}[{i}]", allow_unknown)
        return

    if schema.type == "object":
        if kind != "object":
            raise SchemaViolation(path, f"expected object, got {kind}")
        present = content.properties
        for prop in schema.properties:
            value = present.get(prop.name)
            if value is None:
                if prop.required:
                    raise SchemaViolation(_join(path, prop.name), "required field missing")
                continue
            if value.kind == "null" and not prop.required:
                continue
            _check(prop.type, value, _join(path, prop.name), allow_unknown)
        if not allow_unknown:
            declared = {p.name for p in schema.properties}
            for name in content.keys:
                if name not in declared:
                    raise SchemaViolation(_join(path, name), "unknown field")
        return

    raise SchemaViolation(path, f"unsupported schema type {schema.type}")
