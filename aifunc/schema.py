"""Return-shape model and the compiler from the declarative notation.

The declarative notation is what callers write as ``funcReturn``::

    {
        "people": {
            "type": "array",
            "items": {"name": {"type": "string"}, "age": {"type": "number"}},
        },
        "note": {"type": "string", "optional": True, "describe": "free text"},
    }

A field is a mapping with a ``type`` entry: a primitive (``string``,
``number``, ``boolean``, ``date``), ``array`` / ``object`` (both need
``items``), a sigil name such as ``"number[]"``, or a list of names for a
union. Anything else is an object map of field name -> field.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Union

from aifunc.errors import SchemaError


class SchemaKind(str, enum.Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    ARRAY = "array"
    OBJECT = "object"
    UNION = "union"

    @property
    def is_scalar(self) -> bool:
        return self in _SCALAR_KINDS


_SCALAR_KINDS = frozenset(
    {SchemaKind.STRING, SchemaKind.NUMBER, SchemaKind.BOOLEAN, SchemaKind.DATE}
)

_PRIMITIVE_NAMES = {kind.value: kind for kind in _SCALAR_KINDS}


@dataclass(frozen=True, slots=True)
class SchemaNode:
    """Compiled description of an expected value.

    ``items`` is set for arrays, ``fields`` (ordered) for objects and
    ``options`` (ordered, first match wins) for unions.
    """

    kind: SchemaKind
    items: SchemaNode | None = None
    fields: Mapping[str, SchemaNode] = field(default_factory=dict)
    options: tuple[SchemaNode, ...] = ()
    optional: bool = False
    description: str | None = None
    allow_extra: bool = True

    @classmethod
    def scalar(cls, kind: SchemaKind | str, **modifiers: Any) -> SchemaNode:
        kind = SchemaKind(kind)
        if not kind.is_scalar:
            raise SchemaError(f"{kind.value!r} is not a scalar kind")
        return cls(kind=kind, **modifiers)

    @classmethod
    def array_of(cls, items: SchemaNode, **modifiers: Any) -> SchemaNode:
        return cls(kind=SchemaKind.ARRAY, items=items, **modifiers)

    @classmethod
    def object_of(cls, fields: Mapping[str, SchemaNode], **modifiers: Any) -> SchemaNode:
        return cls(kind=SchemaKind.OBJECT, fields=dict(fields), **modifiers)

    @classmethod
    def union_of(cls, *options: SchemaNode, **modifiers: Any) -> SchemaNode:
        if not options:
            raise SchemaError("a union needs at least one alternative")
        return cls(kind=SchemaKind.UNION, options=tuple(options), **modifiers)

    @property
    def is_scalar(self) -> bool:
        if self.kind is SchemaKind.UNION:
            return all(option.is_scalar for option in self.options)
        return self.kind.is_scalar

    def decorated(self, *, optional: bool | None = None, description: str | None = None) -> SchemaNode:
        changes: dict[str, Any] = {}
        if optional is not None:
            changes["optional"] = optional
        if description is not None:
            changes["description"] = description
        return replace(self, **changes) if changes else self


DeclaredReturn = Union[SchemaNode, Mapping[str, Any]]


def compile_schema(declared: DeclaredReturn) -> SchemaNode:
    """Compile a declared return shape into a `SchemaNode`.

    A `SchemaNode` is returned unchanged. A mapping is compiled as a field
    (when it carries a ``type`` name) or as an object map. Bare strings are
    rejected at the top level: ``"dict"`` or ``"number"`` on their own are too
    ambiguous to coerce against.

    Raises:
        SchemaError: On anything that does not describe a finite shape.
    """
    if isinstance(declared, SchemaNode):
        return declared
    if isinstance(declared, str):
        raise SchemaError(
            f"funcReturn must be a structured schema, not the bare type string {declared!r}; "
            f'use {{"type": "{declared}"}} or an object map'
        )
    if not isinstance(declared, Mapping):
        raise SchemaError(f"funcReturn must be a mapping or SchemaNode, got {type(declared).__name__}")
    return _Compiler().compile_root(declared)


class _Compiler:
    """Single-use compiler; tracks mappings on the current path to reject cycles."""

    def __init__(self) -> None:
        self._active: set[int] = set()

    def compile_root(self, declared: Mapping[str, Any]) -> SchemaNode:
        if _is_field_spec(declared):
            return self._field(declared, "$")
        return self._object_map(declared, "$")

    def _enter(self, value: Any, path: str) -> None:
        if id(value) in self._active:
            raise SchemaError(f"{path}: schema refers to itself")
        self._active.add(id(value))

    def _leave(self, value: Any) -> None:
        self._active.discard(id(value))

    def _object_map(self, declared: Mapping[str, Any], path: str) -> SchemaNode:
        if not declared:
            raise SchemaError(f"{path}: object map has no fields")
        self._enter(declared, path)
        try:
            fields: dict[str, SchemaNode] = {}
            for name, spec in declared.items():
                if not isinstance(name, str) or not name:
                    raise SchemaError(f"{path}: field names must be non-empty strings, got {name!r}")
                child = f"{path}.{name}"
                if isinstance(spec, str):
                    fields[name] = self._type_name(spec, None, child)
                elif isinstance(spec, SchemaNode):
                    fields[name] = spec
                elif isinstance(spec, Mapping):
                    if "type" not in spec:
                        raise SchemaError(f"{child}: missing 'type'")
                    fields[name] = self._field(spec, child)
                else:
                    raise SchemaError(f"{child}: expected a field mapping, got {type(spec).__name__}")
            return SchemaNode.object_of(fields)
        finally:
            self._leave(declared)

    def _field(self, spec: Mapping[str, Any], path: str) -> SchemaNode:
        self._enter(spec, path)
        try:
            declared_type = spec.get("type")
            items = spec.get("items")
            if isinstance(declared_type, str):
                node = self._type_name(declared_type, items, path)
            elif isinstance(declared_type, (list, tuple)):
                if not declared_type:
                    raise SchemaError(f"{path}: union 'type' list is empty")
                options = []
                for index, name in enumerate(declared_type):
                    if not isinstance(name, str):
                        raise SchemaError(f"{path}: union alternative {index} must be a type name")
                    options.append(self._type_name(name, items, f"{path}|{name}"))
                node = SchemaNode.union_of(*options)
            elif declared_type is None:
                raise SchemaError(f"{path}: missing 'type'")
            else:
                raise SchemaError(f"{path}: 'type' must be a name or a list of names")

            if node.kind is SchemaKind.OBJECT:
                allow_extra = spec.get("allowExtra", spec.get("allow_extra", True))
                node = replace(node, allow_extra=bool(allow_extra))
            return node.decorated(
                optional=_optional_flag(spec, path),
                description=_description(spec, path),
            )
        finally:
            self._leave(spec)

    def _type_name(self, name: str, items: Any, path: str) -> SchemaNode:
        name = name.strip()
        if name.endswith("[]"):
            return SchemaNode.array_of(self._type_name(name[:-2], items, path))
        lowered = name.lower()
        if lowered in _PRIMITIVE_NAMES:
            return SchemaNode.scalar(_PRIMITIVE_NAMES[lowered])
        if lowered == SchemaKind.ARRAY.value:
            if items is None:
                raise SchemaError(f"{path}: 'array' requires 'items'")
            return SchemaNode.array_of(self._items(items, path + "[]"))
        if lowered == SchemaKind.OBJECT.value:
            if items is None:
                raise SchemaError(f"{path}: 'object' requires 'items'")
            if isinstance(items, SchemaNode):
                if items.kind is not SchemaKind.OBJECT:
                    raise SchemaError(f"{path}: 'object' items must describe fields")
                return items
            if not isinstance(items, Mapping) or _is_field_spec(items):
                raise SchemaError(f"{path}: 'object' items must be a map of fields")
            return self._object_map(items, path)
        raise SchemaError(f"{path}: unknown type {name!r}")

    def _items(self, items: Any, path: str) -> SchemaNode:
        if isinstance(items, SchemaNode):
            return items
        if isinstance(items, str):
            return self._type_name(items, None, path)
        if isinstance(items, Mapping):
            if _is_field_spec(items):
                return self._field(items, path)
            return self._object_map(items, path)
        raise SchemaError(f"{path}: 'items' must be a type name, field or object map")


def _is_field_spec(value: Mapping[str, Any]) -> bool:
    return isinstance(value.get("type"), (str, list, tuple))


def _optional_flag(spec: Mapping[str, Any], path: str) -> bool | None:
    if "optional" not in spec:
        return None
    flag = spec["optional"]
    if not isinstance(flag, bool):
        raise SchemaError(f"{path}: 'optional' must be a boolean")
    return flag


def _description(spec: Mapping[str, Any], path: str) -> str | None:
    text = spec.get("describe", spec.get("description"))
    if text is None:
        return None
    if not isinstance(text, str):
        raise SchemaError(f"{path}: 'describe' must be a string")
    return text


_PROMPT_TYPE_NAMES = {
    SchemaKind.STRING: "str",
    SchemaKind.NUMBER: "float",
    SchemaKind.BOOLEAN: "bool",
    SchemaKind.DATE: "date",
}


def render_type(node: SchemaNode) -> str:
    """Render a node in the Python-flavoured notation used in prompts.

    >>> render_type(compile_schema({"names": {"type": "string[]"}}))
    '{"names": list[str]}'
    """
    if node.kind.is_scalar:
        return _PROMPT_TYPE_NAMES[node.kind]
    if node.kind is SchemaKind.ARRAY:
        assert node.items is not None
        return f"list[{render_type(node.items)}]"
    if node.kind is SchemaKind.UNION:
        return " | ".join(render_type(option) for option in node.options)
    if node.kind is SchemaKind.OBJECT:
        parts = []
        for name, child in node.fields.items():
            rendered = render_type(child)
            if child.optional:
                rendered = f"{rendered} | None"
            parts.append(f"{json.dumps(name)}: {rendered}")
        return "{" + ", ".join(parts) + "}"
    raise AssertionError(f"unhandled schema kind {node.kind!r}")


def describe_fields(node: SchemaNode, prefix: str = "") -> list[str]:
    """List ``path: description`` lines for every described node, depth first."""
    lines: list[str] = []
    if node.description:
        lines.append(f"{prefix or 'return'}: {node.description}")
    if node.kind is SchemaKind.OBJECT:
        for name, child in node.fields.items():
            lines.extend(describe_fields(child, f"{prefix}.{name}" if prefix else name))
    elif node.kind is SchemaKind.ARRAY and node.items is not None:
        lines.extend(describe_fields(node.items, f"{prefix}[]" if prefix else "[]"))
    elif node.kind is SchemaKind.UNION:
        for option in node.options:
            lines.extend(describe_fields(option, prefix))
    return lines
