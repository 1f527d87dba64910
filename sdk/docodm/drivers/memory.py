"""
In-memory storage driver.

This module provides a document store living in process memory for:
- Unit and integration tests
- Local development without a database server

Query support:
    - Equality on plain and dotted paths (array fields match by containment)
    - ``$eq``, ``$ne``, ``$in``, ``$nin``, ``$gt``, ``$gte``, ``$lt``,
      ``$lte``, ``$exists``
    - ``$and`` / ``$or``
    - Projection, ``sort``, ``skip``, ``limit``

Update operators: ``$set``, ``$unset``, ``$inc``, ``$push`` (with
``$each``), ``$pull``, ``$addToSet``. An update without operators replaces
the stored document (keeping its ``_id``).

Invariants:
    - All data is lost on process exit
    - Stored documents are deep copies; callers never alias driver state
    - Insertion order is the natural order of ``find``
    - ``_id`` and unique indexes are enforced on every write; a violation
      raises pymongo's DuplicateKeyError and leaves the collection unchanged

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the StorageDriver protocol
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from ..errors import BadQueryError, ConnectionError
from ..options import get_option
from ..paths import deep_get, deep_set, deep_unset, has_path
from .base import Document, Options, index_name

logger = logging.getLogger(__name__)

COMPARATORS = {"$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in", "$nin", "$exists"}
LOGICAL = {"$and", "$or"}


def _equals(value: Any, expected: Any) -> bool:
    if isinstance(value, list) and not isinstance(expected, list):
        return any(_equals(item, expected) for item in value)
    if isinstance(value, bool) != isinstance(expected, bool):
        return False
    return value == expected


def _compare(value: Any, op: str, arg: Any) -> bool:
    if value is None:
        return False
    try:
        if op == "$gt":
            return value > arg
        if op == "$gte":
            return value >= arg
        if op == "$lt":
            return value < arg
        return value <= arg
    except TypeError:
        return False


def _eval_op(doc: Mapping, path: str, op: str, arg: Any) -> bool:
    value = deep_get(doc, path)
    if op == "$eq":
        return _equals(value, arg)
    if op == "$ne":
        return not _equals(value, arg)
    if op in ("$in", "$nin"):
        if not isinstance(arg, (list, tuple)):
            raise BadQueryError(f"{op} expects an array")
        found = any(_equals(value, candidate) for candidate in arg)
        return found if op == "$in" else not found
    if op == "$exists":
        return has_path(doc, path) == bool(arg)
    return _compare(value, op, arg)


def match_query(doc: Mapping, query: Mapping) -> bool:
    """Whether ``doc`` satisfies ``query``.

    Raises:
        BadQueryError: If the query uses an unsupported operator
    """
    for key, cond in query.items():
        if key in LOGICAL:
            if not isinstance(cond, (list, tuple)):
                raise BadQueryError(f"{key} requires a list of clauses")
            results = [match_query(doc, clause) for clause in cond]
            if not (all(results) if key == "$and" else any(results)):
                return False
            continue

        if isinstance(cond, Mapping) and any(op.startswith("$") for op in cond):
            for op, arg in cond.items():
                if op not in COMPARATORS:
                    raise BadQueryError(f"Unsupported operator: {op}")
                if not _eval_op(doc, key, op, arg):
                    return False
            continue

        if not has_path(doc, key) and cond is not None:
            return False
        if not _equals(deep_get(doc, key), cond):
            return False
    return True


def project(doc: Document, fields: Optional[Mapping[str, Any]]) -> Document:
    """Apply an inclusion or exclusion projection to a copy of ``doc``."""
    if not fields:
        return copy.deepcopy(doc)

    include = [key for key, flag in fields.items() if flag and key != "_id"]
    if include:
        out: Document = {}
        if fields.get("_id", 1) and "_id" in doc:
            out["_id"] = doc["_id"]
        for key in include:
            if has_path(doc, key):
                deep_set(out, key, copy.deepcopy(deep_get(doc, key)))
        return out

    out = copy.deepcopy(doc)
    for key, flag in fields.items():
        if not flag:
            deep_unset(out, key)
    return out


def _sort_spec(sort: Any) -> List[tuple]:
    if not sort:
        return []
    if isinstance(sort, Mapping):
        return list(sort.items())
    if isinstance(sort, str):
        return [(sort, 1)]
    return [tuple(item) for item in sort]


def _sort_key(value: Any) -> tuple:
    # None sorts first, then values grouped by type name so mixed types compare
    if value is None:
        return (0, "", 0)
    return (1, type(value).__name__, value)


def _apply_update(doc: Document, update: Mapping[str, Any]) -> Document:
    new_doc = copy.deepcopy(doc)
    for op, changes in update.items():
        if op == "$set":
            for key, value in changes.items():
                deep_set(new_doc, key, copy.deepcopy(value))
        elif op == "$unset":
            for key in changes:
                deep_unset(new_doc, key)
        elif op == "$inc":
            for key, value in changes.items():
                current = deep_get(new_doc, key, 0)
                if not isinstance(current, (int, float)) or isinstance(current, bool):
                    raise BadQueryError(f"$inc requires numeric field: {key}")
                deep_set(new_doc, key, current + value)
        elif op == "$push":
            for key, value in changes.items():
                array = deep_get(new_doc, key)
                if array is None:
                    array = []
                if not isinstance(array, list):
                    raise BadQueryError(f"$push requires array field: {key}")
                if isinstance(value, Mapping) and "$each" in value:
                    array.extend(copy.deepcopy(value["$each"]))
                else:
                    array.append(copy.deepcopy(value))
                deep_set(new_doc, key, array)
        elif op == "$pull":
            for key, value in changes.items():
                array = deep_get(new_doc, key, [])
                if not isinstance(array, list):
                    raise BadQueryError(f"$pull requires array field: {key}")
                if isinstance(value, Mapping):
                    kept = [item for item in array if not (isinstance(item, Mapping) and match_query(item, value))]
                else:
                    kept = [item for item in array if not _equals(item, value)]
                deep_set(new_doc, key, kept)
        elif op == "$addToSet":
            for key, value in changes.items():
                array = deep_get(new_doc, key)
                if array is None:
                    array = []
                if not isinstance(array, list):
                    raise BadQueryError(f"$addToSet requires array field: {key}")
                items = value["$each"] if isinstance(value, Mapping) and "$each" in value else [value]
                for item in items:
                    if item not in array:
                        array.append(copy.deepcopy(item))
                deep_set(new_doc, key, array)
        else:
            raise BadQueryError(f"Unsupported update operator: {op}")
    return new_doc


def _is_operator_update(document: Mapping[str, Any]) -> bool:
    return any(key.startswith("$") for key in document)


def _duplicate(collection: str, index: str, key: Mapping[str, Any]) -> DuplicateKeyError:
    message = f"E11000 duplicate key error collection: {collection} index: {index} dup key: {dict(key)}"
    return DuplicateKeyError(message, code=11000, details={"keyValue": dict(key), "errmsg": message})


@dataclass
class MemoryCollection:
    """Documents and indexes of one in-memory collection."""

    name: str
    documents: Dict[ObjectId, Document] = field(default_factory=dict)
    indexes: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def matching(self, query: Mapping[str, Any]) -> List[Document]:
        return [doc for doc in self.documents.values() if match_query(doc, query)]

    def check_unique(self, document: Mapping[str, Any], staged: Optional[Mapping[Any, Document]] = None) -> None:
        """Raise DuplicateKeyError if ``document`` collides on a unique index.

        The document's own ``_id`` is never a collision, so replacing a
        stored document with itself passes. Missing fields count as None.
        ``staged`` holds documents of the same batch not yet committed.
        """
        others = dict(self.documents)
        others.update(staged or {})
        others.pop(document["_id"], None)

        for name, index in self.indexes.items():
            if not index["unique"]:
                continue
            fields = list(index["key"])
            key = tuple(deep_get(document, path) for path in fields)
            for other in others.values():
                if tuple(deep_get(other, path) for path in fields) == key:
                    raise _duplicate(self.name, name, dict(zip(fields, key)))

    def check_new_id(self, _id: Any, staged: Optional[Mapping[Any, Document]] = None) -> None:
        if _id in self.documents or _id in (staged or {}):
            raise _duplicate(self.name, "_id_", {"_id": _id})


class MemoryDriver:
    """In-memory implementation of StorageDriver.

    Attributes:
        collections: Storage per collection name
        calls: Names of the operations performed, in order

    Example:
        >>> driver = MemoryDriver()
        >>> await driver.connect()
        >>> users = await driver.collection("users")
        >>> await driver.insert(users, [{"name": "Bob"}])
        [ObjectId('...')]
    """

    def __init__(self) -> None:
        self.collections: Dict[str, MemoryCollection] = {}
        self._connected = False
        self._lock = asyncio.Lock()
        self.calls: List[str] = []

    @property
    def is_connected(self) -> bool:
        """Whether connect() has been called."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("MemoryDriver connected")

    async def close(self) -> None:
        """Disconnect and drop all data."""
        self._connected = False
        self.collections.clear()
        logger.debug("MemoryDriver closed")

    def _check(self, operation: str) -> None:
        if not self._connected:
            raise ConnectionError("Not connected")
        self.calls.append(operation)

    async def collection(self, name: str, options: Options = None) -> MemoryCollection:
        """Return (creating if needed) the collection ``name``."""
        self._check("collection")
        if name not in self.collections:
            self.collections[name] = MemoryCollection(name=name)
        return self.collections[name]

    def _select(self, collection: MemoryCollection, query: Mapping[str, Any], options: Options) -> List[Document]:
        docs = collection.matching(query or {})
        for key, direction in reversed(_sort_spec(get_option("sort", options))):
            docs = sorted(docs, key=lambda doc: _sort_key(deep_get(doc, key)), reverse=direction < 0)
        skip = get_option("skip", options) or 0
        limit = get_option("limit", options) or 0
        if skip:
            docs = docs[skip:]
        if limit:
            docs = docs[:limit]
        return docs

    async def find_one(
        self,
        collection: MemoryCollection,
        query: Mapping[str, Any],
        fields: Optional[Mapping[str, Any]] = None,
        options: Options = None,
    ) -> Optional[Document]:
        """First matching document (copy) or None."""
        self._check("find_one")
        docs = self._select(collection, query, dict(options or {}, limit=1))
        return project(docs[0], fields) if docs else None

    async def find(
        self,
        collection: MemoryCollection,
        query: Mapping[str, Any],
        fields: Optional[Mapping[str, Any]] = None,
        options: Options = None,
    ) -> List[Document]:
        """All matching documents (copies)."""
        self._check("find")
        return [project(doc, fields) for doc in self._select(collection, query, options)]

    async def count(self, collection: MemoryCollection, query: Mapping[str, Any], options: Options = None) -> int:
        """Number of matching documents."""
        self._check("count")
        return len(collection.matching(query or {}))

    async def insert(
        self, collection: MemoryCollection, documents: List[Mapping[str, Any]], options: Options = None
    ) -> List[ObjectId]:
        """Insert copies of ``documents``; ids are assigned where missing.

        Raises:
            DuplicateKeyError: If an ``_id`` or unique index value is taken;
                nothing of the batch is stored
        """
        self._check("insert")
        staged: Dict[Any, Document] = {}
        async with self._lock:
            for document in documents:
                stored = copy.deepcopy(dict(document))
                stored.setdefault("_id", ObjectId())
                collection.check_new_id(stored["_id"], staged)
                collection.check_unique(stored, staged)
                staged[stored["_id"]] = stored
            collection.documents.update(staged)
        logger.debug(
            "Documents inserted into memory collection",
            extra={"collection": collection.name, "count": len(staged)},
        )
        return list(staged)

    async def save(self, collection: MemoryCollection, document: Mapping[str, Any], options: Options = None) -> ObjectId:
        """Insert or replace by ``_id``."""
        self._check("save")
        stored = copy.deepcopy(dict(document))
        async with self._lock:
            stored.setdefault("_id", ObjectId())
            collection.check_unique(stored)
            collection.documents[stored["_id"]] = stored
        return stored["_id"]

    async def update(
        self,
        collection: MemoryCollection,
        criteria: Mapping[str, Any],
        document: Mapping[str, Any],
        options: Options = None,
    ) -> int:
        """Update the first (or every, with ``multi``) matching document."""
        self._check("update")
        operators = _is_operator_update(document)
        if operators and not all(key.startswith("$") for key in document):
            raise BadQueryError("Update document mixes operators and fields")

        async with self._lock:
            targets = collection.matching(criteria)
            if not get_option("multi", options):
                targets = targets[:1]

            if not targets and get_option("upsert", options):
                seed = {key: value for key, value in criteria.items() if not isinstance(value, Mapping)}
                new_doc = _apply_update(seed, document) if operators else copy.deepcopy(dict(document))
                new_doc.setdefault("_id", ObjectId())
                collection.check_new_id(new_doc["_id"])
                collection.check_unique(new_doc)
                collection.documents[new_doc["_id"]] = new_doc
                return 0

            staged: Dict[Any, Document] = {}
            for target in targets:
                if operators:
                    new_doc = _apply_update(target, document)
                else:
                    new_doc = copy.deepcopy(dict(document))
                new_doc["_id"] = target["_id"]
                staged[target["_id"]] = new_doc
            for new_doc in staged.values():
                collection.check_unique(new_doc, staged)
            collection.documents.update(staged)
        return len(targets)

    async def remove(self, collection: MemoryCollection, query: Mapping[str, Any], options: Options = None) -> int:
        """Delete every matching document."""
        self._check("remove")
        async with self._lock:
            doomed = [doc["_id"] for doc in collection.matching(query or {})]
            for _id in doomed:
                del collection.documents[_id]
        return len(doomed)

    async def ensure_index(
        self, collection: MemoryCollection, spec: Mapping[str, Any], options: Options = None
    ) -> str:
        """Record the index; the memory store scans on every query anyway.

        Raises:
            DuplicateKeyError: If ``unique`` is requested and stored
                documents already collide; the index is not recorded
        """
        self._check("ensure_index")
        name = index_name(spec)
        index = {"key": dict(spec), "unique": bool(get_option("unique", options))}
        async with self._lock:
            if index["unique"]:
                scratch = MemoryCollection(name=collection.name, indexes={name: index})
                for document in collection.documents.values():
                    scratch.check_unique(document)
                    scratch.documents[document["_id"]] = document
            collection.indexes[name] = index
        return name
