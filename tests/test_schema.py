import pytest

from aifunc.coerce import coerce
from aifunc.errors import ConfigurationError, ConformanceError, SchemaError
from aifunc.schema import SchemaKind, SchemaNode, compile_schema, describe_fields, render_type


def test_bare_scalar_field_compiles_to_scalar_node():
    node = compile_schema({"type": "string"})
    assert node.kind is SchemaKind.STRING
    assert node.is_scalar


def test_array_of_numbers_accepts_numbers_and_rejects_strings():
    node = compile_schema({"type": "array", "items": {"type": "number"}})
    assert node.kind is SchemaKind.ARRAY
    assert coerce([1, 2, 3], node) == [1, 2, 3]
    with pytest.raises(ConformanceError) as exc:
        coerce([1, "x", 3], node)
    assert exc.value.path == "$[1]"


def test_array_sigil_matches_explicit_array():
    sigil = compile_schema({"type": "number[]"})
    explicit = compile_schema({"type": "array", "items": {"type": "number"}})
    assert sigil == explicit


def test_nested_sigil():
    node = compile_schema({"type": "string[][]"})
    assert render_type(node) == "list[list[str]]"


def test_object_map_keeps_field_order():
    node = compile_schema(
        {
            "name": {"type": "string"},
            "age": {"type": "number"},
            "tags": {"type": "string[]"},
        }
    )
    assert node.kind is SchemaKind.OBJECT
    assert list(node.fields) == ["name", "age", "tags"]


def test_object_field_with_items_map():
    node = compile_schema(
        {"person": {"type": "object", "items": {"name": {"type": "string"}}}}
    )
    person = node.fields["person"]
    assert person.kind is SchemaKind.OBJECT
    assert person.fields["name"].kind is SchemaKind.STRING


def test_array_of_objects():
    node = compile_schema(
        {"type": "array", "items": {"city": {"type": "string"}, "pop": {"type": "number"}}}
    )
    assert node.items is not None and node.items.kind is SchemaKind.OBJECT
    assert render_type(node) == 'list[{"city": str, "pop": float}]'


def test_union_from_type_list():
    node = compile_schema({"type": ["string", "number"]})
    assert node.kind is SchemaKind.UNION
    assert [o.kind for o in node.options] == [SchemaKind.STRING, SchemaKind.NUMBER]
    assert coerce("a", node) == "a"
    assert coerce(5, node) == 5
    with pytest.raises(ConformanceError):
        coerce(True, node)


def test_union_alternative_with_sigil():
    node = compile_schema({"type": ["number[]", "string"]})
    assert render_type(node) == "list[float] | str"


def test_modifiers_decorate_without_changing_kind():
    node = compile_schema(
        {"note": {"type": "string", "optional": True, "describe": "free text"}}
    )
    note = node.fields["note"]
    assert note.kind is SchemaKind.STRING
    assert note.optional is True
    assert note.description == "free text"
    assert describe_fields(node) == ["note: free text"]


def test_compiled_node_passes_through():
    node = SchemaNode.array_of(SchemaNode.scalar("number"))
    assert compile_schema(node) is node
    assert compile_schema(compile_schema({"type": "date"})).kind is SchemaKind.DATE


@pytest.mark.parametrize(
    "declared",
    [
        {"x": {"items": {"type": "string"}}},
        {"x": {"type": "color"}},
        {"type": "array"},
        {"x": {"type": "object"}},
        {"type": []},
        {},
        {"x": {"type": "string", "optional": "yes"}},
    ],
)
def test_malformed_declarations_raise_schema_error(declared):
    with pytest.raises(SchemaError):
        compile_schema(declared)


def test_bare_type_string_is_rejected():
    with pytest.raises(SchemaError) as exc:
        compile_schema("number")
    assert "structured schema" in str(exc.value)


def test_schema_error_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        compile_schema(["string"])


def test_self_referential_declaration_is_rejected():
    fields: dict = {"name": {"type": "string"}}
    fields["child"] = {"type": "object", "items": fields}
    with pytest.raises(SchemaError):
        compile_schema(fields)


def test_render_type_marks_optional_fields():
    node = compile_schema(
        {"when": {"type": "date"}, "ok": {"type": "boolean", "optional": True}}
    )
    assert render_type(node) == '{"when": date, "ok": bool | None}'
