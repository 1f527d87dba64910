"""
In-memory matching over arrays of documents.

Used to search embedded arrays (``book.chapters.find_one({...})``) with a
tiny subset of the query language:
- Per-field equality
- ``$ne`` negation
- ``$in`` / ``$nin`` against an explicit list

Invariants:
    - A ``None`` query value is a caller error (BadQueryError), never
      "match null" or "match nothing"
    - A query field absent from the candidate is a non-match, not an error
    - ``remove`` works in place and never skips the element that shifts into
      a removed slot
    - Booleans never compare equal to numbers

Example:
    >>> matches({"a": {"$in": [1, 2]}}, {"a": 1})
    True
    >>> matches({"a": {"$ne": 1}}, {"a": 1})
    False
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, List, MutableSequence, Optional, Sequence, Tuple

from .errors import BadQueryError
from .ids import to_object_id


def _same(search: Any, value: Any) -> bool:
    if isinstance(search, bool) != isinstance(value, bool):
        return False
    return search == value


def _match_value(search: Any, value: Any, reverse: bool) -> bool:
    if reverse:
        return not _same(search, value)
    return _same(search, value)


def _parse(search: Any) -> Tuple[Any, bool, bool]:
    """Split a query value into (operand, negate, multi)."""
    if search is None:
        raise BadQueryError()

    negate = False
    multi = False

    if isinstance(search, Mapping) and "$ne" in search:
        negate = True
        search = search["$ne"]
        if search is None:
            raise BadQueryError()

    if isinstance(search, Mapping) and "$in" in search:
        multi = True
        search = search["$in"]
        if not isinstance(search, (list, tuple)):
            raise BadQueryError("$in/$nin expect an array")
    elif isinstance(search, Mapping) and "$nin" in search:
        multi = True
        negate = True
        search = search["$nin"]
        if not isinstance(search, (list, tuple)):
            raise BadQueryError("$in/$nin expect an array")

    return search, negate, multi


def _test(search: Any, negate: bool, multi: bool, value: Any) -> bool:
    if multi:
        matched = any(_match_value(candidate, value, False) for candidate in search)
        return not matched if negate else matched
    return _match_value(search, value, negate)


def matches(query: Mapping, obj: Any) -> bool:
    """Whether ``obj`` satisfies every clause of ``query``.

    Raises:
        BadQueryError: If a clause is malformed
    """
    for key, search in query.items():
        operand, negate, multi = _parse(search)
        if not isinstance(obj, Mapping) or key not in obj:
            return False
        if not _test(operand, negate, multi, obj[key]):
            return False
    return True


def matches_simple(query: Any, value: Any) -> bool:
    """Whether a scalar ``value`` satisfies ``query``.

    ``query`` is either a literal or an operator mapping such as
    ``{"$nin": ["a", "b"]}``.
    """
    operand, negate, multi = _parse(query)
    return _test(operand, negate, multi, value)


def index_of(query: Mapping, array: Sequence) -> int:
    """Index of the first matching document, or -1."""
    for i, item in enumerate(array):
        if matches(query, item):
            return i
    return -1


def find_one(query: Mapping, array: Optional[Sequence]) -> Any:
    """First matching document, or ``None``."""
    if array is None:
        return None
    for item in array:
        if matches(query, item):
            return item
    return None


def find_by_id(id: Any, array: Optional[Sequence]) -> Any:
    """Document whose ``_id`` equals ``id``, or ``None``.

    Raises:
        InvalidIdentifierError: If ``id`` is not an ObjectId or 24-hex string
    """
    if array is None:
        return None
    _id = to_object_id(id)
    for item in array:
        if isinstance(item, Mapping) and "_id" in item and _id == item["_id"]:
            return item
    return None


def find(query: Mapping, array: Optional[Sequence]) -> List[Any]:
    """All matching documents."""
    if array is None:
        return []
    return [item for item in array if matches(query, item)]


def remove(query: Mapping, array: Optional[MutableSequence]) -> int:
    """Remove matching documents in place.

    Returns:
        Number of removed documents
    """
    if array is None:
        return 0
    removed = 0
    i = 0
    while i < len(array):
        if matches(query, array[i]):
            del array[i]
            removed += 1
        else:
            i += 1
    return removed


def simple_index_of(query: Any, array: Sequence) -> int:
    """Index of the first matching scalar, or -1."""
    for i, value in enumerate(array):
        if matches_simple(query, value):
            return i
    return -1


def simple_find_one(query: Any, array: Optional[Sequence]) -> Any:
    """First matching scalar, or ``None``."""
    if array is None:
        return None
    for value in array:
        if matches_simple(query, value):
            return value
    return None


def simple_find(query: Any, array: Optional[Sequence]) -> List[Any]:
    """All matching scalars."""
    if array is None:
        return []
    return [value for value in array if matches_simple(query, value)]


def simple_remove(query: Any, array: Optional[MutableSequence]) -> int:
    """Remove matching scalars in place and return how many were removed."""
    if array is None:
        return 0
    removed = 0
    i = 0
    while i < len(array):
        if matches_simple(query, array[i]):
            del array[i]
            removed += 1
        else:
            i += 1
    return removed
