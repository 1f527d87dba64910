"""
Unit tests for in-memory array matching.

Tests cover:
- Equality, $ne, $in, $nin
- Malformed queries
- find/find_one/find_by_id/index_of/remove and scalar variants
"""

import pytest
from bson import ObjectId

from sdk.docodm import arrays
from sdk.docodm.errors import BadQueryError, InvalidIdentifierError


class TestMatches:
    """Tests for matches()."""

    def test_in(self):
        assert arrays.matches({"a": {"$in": [1, 2]}}, {"a": 1})
        assert not arrays.matches({"a": {"$in": [1, 2]}}, {"a": 3})

    def test_nin(self):
        assert arrays.matches({"a": {"$nin": [1, 2]}}, {"a": 3})
        assert not arrays.matches({"a": {"$nin": [1, 2]}}, {"a": 2})

    def test_ne(self):
        assert not arrays.matches({"a": {"$ne": 1}}, {"a": 1})
        assert arrays.matches({"a": {"$ne": 1}}, {"a": 2})

    def test_equality_all_clauses(self):
        """Every clause must hold."""
        obj = {"a": 1, "b": "x"}
        assert arrays.matches({"a": 1, "b": "x"}, obj)
        assert not arrays.matches({"a": 1, "b": "y"}, obj)

    def test_missing_field_is_no_match(self):
        assert not arrays.matches({"a": 1}, {"b": 1})
        assert not arrays.matches({"a": {"$ne": 1}}, {"b": 1})

    def test_none_query_value_raises(self):
        with pytest.raises(BadQueryError):
            arrays.matches({"a": None}, {"a": None})

    def test_ne_none_raises(self):
        with pytest.raises(BadQueryError):
            arrays.matches({"a": {"$ne": None}}, {"a": 1})

    def test_in_requires_list(self):
        with pytest.raises(BadQueryError, match=r"\$in/\$nin expect an array"):
            arrays.matches({"a": {"$in": 1}}, {"a": 1})

    def test_bool_never_equals_number(self):
        assert not arrays.matches({"a": True}, {"a": 1})
        assert not arrays.matches({"a": 0}, {"a": False})

    def test_non_mapping_candidate(self):
        assert not arrays.matches({"a": 1}, "a")


class TestDocumentHelpers:
    """Tests for helpers over arrays of documents."""

    @pytest.fixture
    def chapters(self):
        return [
            {"_id": ObjectId("4f6897c612f89af300000001"), "title": "One", "pages": 10},
            {"_id": ObjectId("4f6897c612f89af300000002"), "title": "Two", "pages": 20},
            {"_id": ObjectId("4f6897c612f89af300000003"), "title": "Three", "pages": 20},
        ]

    def test_find(self, chapters):
        assert [c["title"] for c in arrays.find({"pages": 20}, chapters)] == ["Two", "Three"]

    def test_find_none_array(self):
        assert arrays.find({"a": 1}, None) == []
        assert arrays.find_one({"a": 1}, None) is None

    def test_find_one(self, chapters):
        assert arrays.find_one({"pages": 20}, chapters)["title"] == "Two"
        assert arrays.find_one({"pages": 99}, chapters) is None

    def test_index_of(self, chapters):
        assert arrays.index_of({"title": "Three"}, chapters) == 2
        assert arrays.index_of({"title": "Four"}, chapters) == -1

    def test_find_by_id_accepts_hex(self, chapters):
        found = arrays.find_by_id("4f6897c612f89af300000002", chapters)
        assert found["title"] == "Two"

    def test_find_by_id_rejects_malformed(self, chapters):
        with pytest.raises(InvalidIdentifierError, match="invalid object id"):
            arrays.find_by_id("not-an-id", chapters)

    def test_remove_adjacent_matches(self, chapters):
        """Removing consecutive matches does not skip the shifted element."""
        removed = arrays.remove({"pages": 20}, chapters)
        assert removed == 2
        assert [c["title"] for c in chapters] == ["One"]


class TestScalarHelpers:
    """Tests for helpers over arrays of scalars."""

    def test_simple_find(self):
        assert arrays.simple_find({"$in": ["a", "c"]}, ["a", "b", "c"]) == ["a", "c"]

    def test_simple_find_one_literal(self):
        assert arrays.simple_find_one("b", ["a", "b"]) == "b"
        assert arrays.simple_find_one("z", ["a", "b"]) is None

    def test_simple_index_of(self):
        assert arrays.simple_index_of({"$ne": "a"}, ["a", "b"]) == 1

    def test_simple_remove(self):
        tags = ["x", "x", "y", "x"]
        assert arrays.simple_remove("x", tags) == 3
        assert tags == ["y"]
