"""
Unit tests for the schema compiler.

Tests cover:
- Primitive type checks and coercion
- Required fields, defaults and None
- Arrays, inline embedded documents and model types
- Special validators
- Schema drift and _id passthrough
- Memoization by identity
- Malformed definitions
- Schema-less documents
"""

import logging
from datetime import datetime, timezone

import pytest
from bson import Binary, ObjectId

from sdk.docodm.document import EmbeddedModel
from sdk.docodm.errors import (
    RequiredFieldMissingError,
    SchemaDefinitionError,
    TypeMismatchError,
    ValidationError,
)
from sdk.docodm.schema import (
    ABSENT,
    ArrayNode,
    EmbeddedNode,
    FreeNode,
    NodeKind,
    PrimitiveNode,
    SpecialNode,
    compile_schema,
    field,
    special,
)


class TestPrimitives:
    """Tests for primitive coercion."""

    def test_name_age_scenario(self, caplog):
        """Numeric strings coerce and unknown keys are dropped with a warning."""
        node = compile_schema({"name": str, "age": int})

        with caplog.at_level(logging.WARNING):
            result = node.validate({"name": "Bob", "age": "42", "extra": True})

        assert result == {"name": "Bob", "age": 42}
        assert "extra is not defined in the document" in caplog.text

    def test_type_mismatch_message(self):
        node = compile_schema({"age": int})
        with pytest.raises(TypeMismatchError, match="age must have type: integer") as exc_info:
            node.validate({"age": "forty"})
        assert exc_info.value.path == "age"
        assert isinstance(exc_info.value, ValidationError)

    def test_bool_is_not_a_number(self):
        node = compile_schema({"age": int, "score": float})
        with pytest.raises(TypeMismatchError):
            node.validate({"age": True})
        with pytest.raises(TypeMismatchError):
            node.validate({"score": False})

    def test_float_accepts_int_and_strings(self):
        node = compile_schema({"score": float})
        assert node.validate({"score": 3}) == {"score": 3}
        assert node.validate({"score": "1.5"}) == {"score": 1.5}

    def test_bool_coercion(self):
        node = compile_schema({"active": bool})
        assert node.validate({"active": "true"}) == {"active": True}
        assert node.validate({"active": "false"}) == {"active": False}
        assert node.validate({"active": 0}) == {"active": False}
        with pytest.raises(TypeMismatchError):
            node.validate({"active": "maybe"})

    def test_object_id_coercion(self):
        node = compile_schema({"owner": ObjectId})
        result = node.validate({"owner": "4f6897c612f89af300000001"})
        assert result["owner"] == ObjectId("4f6897c612f89af300000001")
        with pytest.raises(TypeMismatchError, match="owner must have type: ObjectId"):
            node.validate({"owner": "nope"})

    def test_object_id_from_referenced_document(self):
        """A referenced document stands for its _id."""
        node = compile_schema({"owner": ObjectId})
        _id = ObjectId()
        assert node.validate({"owner": {"_id": _id, "name": "Bob"}}) == {"owner": _id}

    def test_datetime_coercion(self):
        node = compile_schema({"created": datetime})
        result = node.validate({"created": "2024-01-02T03:04:05"})
        assert result["created"] == datetime(2024, 1, 2, 3, 4, 5)

    def test_datetime_utc_suffix(self):
        """JavaScript toISOString output ends in Z."""
        node = compile_schema({"at": datetime})
        result = node.validate({"at": "2020-01-02T03:04:05.000Z"})
        assert result["at"] == datetime(2020, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    def test_binary_coercion(self):
        node = compile_schema({"blob": Binary})
        result = node.validate({"blob": b"\x00\x01"})
        assert isinstance(result["blob"], Binary)

    def test_none_is_always_allowed(self):
        node = compile_schema({"name": field(str, required=True), "tags": [str], "meta": {"a": int}})
        assert node.validate({"name": None, "tags": None, "meta": None}) == {
            "name": None,
            "tags": None,
            "meta": None,
        }

    def test_generic_object_copied(self):
        node = compile_schema({"extra": dict, "anything": object})
        data = {"extra": {"nested": [1]}, "anything": [1, "a"]}
        result = node.validate(data)
        assert result == data
        assert result["extra"] is not data["extra"]


class TestRequiredAndDefaults:
    """Tests for field() options."""

    def test_required_missing(self):
        node = compile_schema({"name": field(str, required=True)})
        with pytest.raises(RequiredFieldMissingError, match="name is required"):
            node.validate({})

    def test_loading_skips_required(self):
        """Stored documents may be projections."""
        node = compile_schema({"name": field(str, required=True), "age": int})
        assert node.validate({"age": 3}, loading=True) == {"age": 3}

    def test_default_value(self):
        node = compile_schema({"status": field(str, default="new")})
        assert node.validate({}) == {"status": "new"}

    def test_default_factory(self):
        node = compile_schema({"tags": field([str], default=list)})
        first = node.validate({})
        second = node.validate({})
        assert first == {"tags": []}
        assert first["tags"] is not second["tags"]

    def test_defaults_not_applied_when_loading(self):
        node = compile_schema({"status": field(str, default="new")})
        assert node.validate({}, loading=True) == {}

    def test_absent_optional_stays_absent(self):
        node = compile_schema({"name": str})
        assert node.fields["name"].validate(ABSENT, "name") is ABSENT


class TestContainers:
    """Tests for arrays and embedded documents."""

    def test_array_entries_coerced(self):
        node = compile_schema({"scores": [int]})
        assert node.validate({"scores": ["1", 2]}) == {"scores": [1, 2]}

    def test_array_entry_path(self):
        node = compile_schema({"scores": [int]})
        with pytest.raises(TypeMismatchError, match="scores.1 must have type: integer"):
            node.validate({"scores": [1, "x"]})

    def test_array_requires_list(self):
        node = compile_schema({"scores": [int]})
        with pytest.raises(TypeMismatchError, match="scores must have type: array"):
            node.validate({"scores": 1})

    def test_untyped_array(self):
        node = compile_schema({"items": [], "more": list})
        assert node.validate({"items": [1, "a"], "more": [None]}) == {"items": [1, "a"], "more": [None]}

    def test_embedded_path(self):
        node = compile_schema({"address": {"city": str, "zip": int}})
        with pytest.raises(TypeMismatchError, match="address.zip must have type: integer"):
            node.validate({"address": {"city": "Lisbon", "zip": "x"}})

    def test_embedded_requires_mapping(self):
        node = compile_schema({"address": {"city": str}})
        with pytest.raises(TypeMismatchError, match="address must have type: object"):
            node.validate({"address": "Lisbon"})

    def test_array_of_embedded(self):
        node = compile_schema({"chapters": [{"title": str, "pages": int}]})
        result = node.validate({"chapters": [{"title": "One", "pages": "10"}]})
        assert result == {"chapters": [{"title": "One", "pages": 10}]}

    def test_id_passes_through(self):
        """_id is kept untouched at any level."""
        node = compile_schema({"chapters": [{"title": str}]})
        data = {"_id": "custom", "chapters": [{"_id": 7, "title": "One"}]}
        assert node.validate(data) == data

    def test_input_not_mutated(self):
        node = compile_schema({"age": int, "meta": {"tags": [str]}, "extra": str})
        data = {"age": "3", "meta": {"tags": ["a"]}, "drift": 1}
        node.validate(data)
        assert data == {"age": "3", "meta": {"tags": ["a"]}, "drift": 1}

    def test_model_type_reused_by_identity(self):
        class Chapter(EmbeddedModel):
            schema = {"title": str}

        node = compile_schema({"chapters": [Chapter], "first": Chapter})
        assert node.fields["chapters"].element is Chapter.compiled_schema()
        assert node.fields["first"] is Chapter.compiled_schema()
        assert node.fields["first"].model_type is Chapter

    def test_required_model_type_does_not_mutate_shared_node(self):
        class Chapter(EmbeddedModel):
            schema = {"title": str}

        node = compile_schema({"first": field(Chapter, required=True)})
        assert node.fields["first"].required
        assert not Chapter.compiled_schema().required


class TestSpecial:
    """Tests for custom validators."""

    def test_special_hook_replaces_validation(self):
        def upper(value, path):
            return str(value).upper()

        node = compile_schema({"code": special(upper)})
        assert isinstance(node.fields["code"], SpecialNode)
        assert node.validate({"code": 42}) == {"code": "42"}

    def test_validate_key(self):
        def positive(value, path):
            if value <= 0:
                raise ValidationError(f"{path} must be positive", path=path)
            return value

        node = compile_schema({"quantity": {"$validate": positive}})
        assert node.validate({"quantity": 2}) == {"quantity": 2}
        with pytest.raises(ValidationError, match="quantity must be positive"):
            node.validate({"quantity": 0})

    def test_set_key(self):
        node = compile_schema({"slug": {"$set": lambda value: value.strip().lower()}})
        assert node.validate({"slug": "  Hello "}) == {"slug": "hello"}


class TestCompilation:
    """Tests for compile_schema()."""

    def test_node_kinds(self):
        node = compile_schema({"a": str, "b": [int], "c": {"d": bool}})
        assert isinstance(node, EmbeddedNode)
        assert isinstance(node.fields["a"], PrimitiveNode)
        assert isinstance(node.fields["b"], ArrayNode)
        assert node.fields["c"].kind is NodeKind.EMBEDDED

    def test_memoized_by_identity(self):
        definition = {"a": str}
        assert compile_schema(definition) is compile_schema(definition)
        assert compile_schema({"a": str}) is not compile_schema(definition)

    def test_shared_inline_definition(self):
        address = {"city": str}
        node = compile_schema({"home": address, "work": address})
        assert node.fields["home"] is node.fields["work"]

    def test_undefined_descriptor(self):
        with pytest.raises(SchemaDefinitionError, match="Incomplete schema: name is undefined"):
            compile_schema({"name": None})

    def test_unsupported_descriptor(self):
        with pytest.raises(SchemaDefinitionError, match="type of tags is not supported"):
            compile_schema({"tags": set})

    def test_array_with_two_types(self):
        with pytest.raises(SchemaDefinitionError):
            compile_schema({"mixed": [str, int]})

    def test_to_dict(self):
        node = compile_schema({"name": field(str, required=True), "tags": [str]})
        assert node.to_dict() == {
            "kind": "embedded",
            "fields": {
                "name": {"kind": "primitive", "required": True, "type": "string"},
                "tags": {"kind": "array", "items": {"kind": "primitive", "type": "string"}},
            },
        }


class TestFreeNode:
    """Tests for the schema-less node."""

    def test_keeps_every_key_uncoerced(self, caplog):
        node = FreeNode()
        data = {"_id": 1, "age": "42", "nested": {"tags": ["a", 2]}}

        with caplog.at_level(logging.WARNING):
            result = node.validate(data)

        assert result == data
        assert result["nested"] is not data["nested"]
        assert caplog.text == ""

    def test_allows_any_key(self):
        assert FreeNode().allows("anything")
        assert not compile_schema({"name": str}).allows("anything")
        assert compile_schema({"name": str}).allows("_id")

    def test_requires_mapping(self):
        with pytest.raises(TypeMismatchError, match="must have type: object"):
            FreeNode().validate(["not", "a", "document"], "doc")
