"""
Document runtime shared by models and embedded models.

Every document instance owns one plain ``dict`` tree (its internal
document). Field access goes through generated accessors:

- primitive fields return the stored value
- embedded fields return a *view*: an instance of the embedded type whose
  internal document IS the nested dict inside the parent's tree
- array fields return a DocumentArray wrapping the stored list

    >>> book = Book({"title": "Dune", "author": {"name": "Frank"}})
    >>> book.author.name = "Frank Herbert"
    >>> book.to_dict()["author"]["name"]
    'Frank Herbert'

Invariants:
    - Views alias the parent's nested dicts/lists; mutating a view mutates
      the parent and nothing is copied on access
    - A view is built on first access and cached on its parent; assigning
      the field or reloading the parent discards it
    - Every value written through an accessor or a DocumentArray is
      validated (and coerced) by the field's schema node first

How to change safely:
    - Never replace a nested container in place of the one a cached view
      holds without dropping the view; ``_get_field`` checks identity
    - Field names that collide with document attributes get no accessor and
      remain reachable as ``doc["name"]``
"""

from __future__ import annotations

import copy
import keyword
import logging
from collections.abc import Mapping, MutableSequence
from typing import Any, ClassVar, Dict, Iterable, List, Optional

from bson import json_util

from . import arrays
from .errors import EmbeddedModelError, ValidationError
from .schema import ABSENT, ArrayNode, EmbeddedNode, FreeNode, NodeKind, SchemaNode, compile_schema
from .validate import SchemaEnvironment

logger = logging.getLogger(__name__)

_CONTAINER_KINDS = (NodeKind.EMBEDDED, NodeKind.ARRAY)


def _join(path: str, key: Any) -> str:
    return f"{path}.{key}" if path else str(key)


def embedded_type(node: EmbeddedNode) -> type:
    """Document type used for views of ``node`` values.

    Inline dict definitions get an anonymous EmbeddedModel subclass, created
    once per compiled node.
    """
    if node.model_type is None:
        anonymous = type("EmbeddedDocument", (EmbeddedModel,), {})
        anonymous._node = node
        anonymous._install_accessors(node)
        node.model_type = anonymous
    return node.model_type


def make_view(node: SchemaNode, value: Any, parent: Optional[BaseDocument], path: str) -> Any:
    """Wrap a stored container in a view aliasing it, or return ``value``."""
    if node.kind is NodeKind.EMBEDDED and isinstance(value, dict):
        return embedded_type(node)._view(value, parent, path)
    if node.kind is NodeKind.ARRAY and isinstance(value, list):
        return DocumentArray(value, node, parent, path)
    return value


class FieldAccessor:
    """Attribute descriptor for one schema field."""

    def __init__(self, name: str) -> None:
        self.name = name

    def __get__(self, instance: Optional[BaseDocument], owner: type) -> Any:
        if instance is None:
            return self
        return instance._get_field(self.name)

    def __set__(self, instance: BaseDocument, value: Any) -> None:
        instance._set_field(self.name, value)

    def __delete__(self, instance: BaseDocument) -> None:
        instance._delete_field(self.name)


class BaseDocument:
    """Schema-bound document.

    Subclasses declare ``schema`` (a schema definition mapping) and
    optionally ``json_schema`` (inline JSON schema or URI registered in
    the Odm's SchemaEnvironment). Without a schema the document is free:
    every key is stored as given and fields are reached as ``doc["key"]``.
    """

    schema: ClassVar[Optional[Mapping[str, Any]]] = None
    json_schema: ClassVar[Optional[Any]] = None

    _node: ClassVar[Optional[EmbeddedNode]] = None
    _odm: ClassVar[Optional[Any]] = None

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        cls._node = None
        if cls.schema is not None:
            cls.compiled_schema()

    @classmethod
    def compiled_schema(cls) -> EmbeddedNode:
        """Compiled schema of this type, compiled once per class."""
        node = cls.__dict__.get("_node")
        if node is None:
            if cls.schema is None:
                node = FreeNode(model_type=cls)
            else:
                node = compile_schema(cls.schema, model_type=cls)
            cls._node = node
            cls._install_accessors(node)
        return node

    @classmethod
    def _install_accessors(cls, node: EmbeddedNode) -> None:
        for name in node.fields:
            existing = getattr(cls, name, None)
            if (
                not name.isidentifier()
                or keyword.iskeyword(name)
                or (existing is not None and not isinstance(existing, FieldAccessor))
            ):
                logger.debug(
                    "Field has no attribute accessor",
                    extra={"model": cls.__name__, "field": name},
                )
                continue
            setattr(cls, name, FieldAccessor(name))

    def __init__(self, data: Optional[Mapping[str, Any]] = None, **fields: Any) -> None:
        """Create a transient document, validating ``data`` strictly.

        Raises:
            ValidationError: If a value has the wrong type or a required
                field is missing
        """
        values = dict(data or {}, **fields)
        self._bind(type(self).compiled_schema().validate(values, "", loading=False))

    def _bind(self, document: Dict[str, Any], parent: Optional[BaseDocument] = None, path: str = "") -> None:
        self._document = document
        self._submodels: Dict[str, Any] = {}
        self._parent = parent
        self._path = path
        self._removed = False

    @classmethod
    def wrap(cls, raw: Optional[Mapping[str, Any]]) -> Any:
        """Build an instance from a stored document.

        Loading-mode validation: types are coerced, required checks skipped
        and ``_id`` kept.
        """
        if raw is None:
            return None
        instance = cls.__new__(cls)
        instance._bind(cls.compiled_schema().validate(raw, "", loading=True))
        return instance

    @classmethod
    def _view(cls, document: Dict[str, Any], parent: Optional[BaseDocument], path: str) -> Any:
        instance = cls.__new__(cls)
        instance._bind(document, parent, path)
        return instance

    def _get_field(self, name: str) -> Any:
        node = type(self).compiled_schema().fields[name]
        value = self._document.get(name)
        if value is None or node.kind not in _CONTAINER_KINDS:
            return value

        cached = self._submodels.get(name)
        if cached is not None and cached._document is value:
            return cached

        view = make_view(node, value, self, _join(self._path, name))
        if view is not value:
            self._submodels[name] = view
        return view

    def _set_field(self, name: str, value: Any) -> None:
        node = type(self).compiled_schema().fields[name]
        coerced = node.validate(value, _join(self._path, name), loading=False)
        self._submodels.pop(name, None)
        if coerced is ABSENT:
            self._document.pop(name, None)
        else:
            self._document[name] = coerced

    def _delete_field(self, name: str) -> None:
        self._submodels.pop(name, None)
        self._document.pop(name, None)

    @property
    def _id(self) -> Any:
        return self._document.get("_id")

    @_id.setter
    def _id(self, value: Any) -> None:
        self._document["_id"] = value

    @property
    def parent(self) -> Optional[BaseDocument]:
        """Document this view belongs to, ``None`` for top-level instances."""
        return self._parent

    def __getitem__(self, key: str) -> Any:
        if key not in self._document:
            raise KeyError(key)
        if key in type(self).compiled_schema().fields:
            return self._get_field(key)
        return self._document[key]

    def __setitem__(self, key: str, value: Any) -> None:
        if key in type(self).compiled_schema().fields:
            self._set_field(key, value)
        else:
            self._document[key] = value

    def __delitem__(self, key: str) -> None:
        self._submodels.pop(key, None)
        del self._document[key]

    def __contains__(self, key: object) -> bool:
        return key in self._document

    def get(self, key: str, default: Any = None) -> Any:
        return self[key] if key in self._document else default

    def keys(self) -> Iterable[str]:
        return self._document.keys()

    def __eq__(self, other: object) -> bool:
        if isinstance(other, BaseDocument):
            return type(self) is type(other) and self._document == other._document
        if isinstance(other, Mapping):
            return self._document == other
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._document!r})"

    def __str__(self) -> str:
        return self.to_json()

    def to_dict(self) -> Dict[str, Any]:
        """Deep copy of the internal document."""
        return copy.deepcopy(self._document)

    def to_json(self) -> str:
        """Relaxed Extended JSON of the internal document."""
        return json_util.dumps(self._document, json_options=json_util.RELAXED_JSON_OPTIONS)

    @classmethod
    def _schema_environment(cls) -> SchemaEnvironment:
        if cls._odm is not None:
            return cls._odm.schemas
        return SchemaEnvironment()

    def validate(self) -> Dict[str, Any]:
        """Validate the whole document strictly.

        Returns:
            The validated (coerced) copy of the document, as it would be
            written to storage

        Raises:
            ValidationError: On the first failing field, or with the full
                error list when the JSON schema check fails
        """
        document = type(self).compiled_schema().validate(self._document, self._path, loading=False)
        if self.json_schema is not None:
            errors = self._schema_environment().validate(document, self.json_schema)
            if errors:
                raise ValidationError(
                    f"{type(self).__name__} failed JSON schema validation",
                    path=self._path or None,
                    errors=errors,
                )
        return document

    def is_valid(self) -> bool:
        """Whether ``validate()`` passes."""
        try:
            self.validate()
        except ValidationError:
            return False
        return True


class EmbeddedModel(BaseDocument):
    """Document type without a collection.

    Used as the type of embedded fields and array entries. Persistence goes
    through the top-level model that contains it.
    """

    def _reject(self, operation: str) -> None:
        raise EmbeddedModelError(operation, type(self).__name__)

    async def save(self, options: Optional[Dict[str, Any]] = None) -> Any:
        self._reject("save")

    async def insert(self, options: Optional[Dict[str, Any]] = None) -> Any:
        self._reject("insert")

    async def update(self, partial: Optional[Mapping[str, Any]] = None, options: Optional[Dict[str, Any]] = None) -> Any:
        self._reject("update")

    async def remove(self, options: Optional[Dict[str, Any]] = None) -> Any:
        self._reject("remove")

    async def reload(self, options: Optional[Dict[str, Any]] = None) -> Any:
        self._reject("reload")


class DocumentArray(MutableSequence):
    """List field of a document.

    Wraps (does not copy) the stored list. Values written through it are
    validated by the array's element node; embedded entries are returned as
    views.

    Example:
        >>> book.chapters.append({"title": "Prologue"})
        >>> book.chapters.find_one({"title": "Prologue"}).title
        'Prologue'
        >>> book.chapters.remove_where({"title": {"$in": ["Prologue"]}})
        1
    """

    def __init__(
        self,
        items: List[Any],
        node: ArrayNode,
        parent: Optional[BaseDocument] = None,
        path: str = "",
    ) -> None:
        self._document = items
        self._node = node
        self._parent = parent
        self._path = path
        self._views: Dict[int, Any] = {}

    @property
    def _embedded(self) -> bool:
        return self._node.element.kind is NodeKind.EMBEDDED

    def _wrap(self, item: Any, index: int) -> Any:
        if self._node.element.kind not in _CONTAINER_KINDS:
            return item
        cached = self._views.get(id(item))
        if cached is not None and cached._document is item:
            return cached
        view = make_view(self._node.element, item, self._parent, _join(self._path, index))
        if view is not item:
            self._views[id(item)] = view
        return view

    def _validate(self, value: Any, index: int) -> Any:
        return self._node.validate_item(value, _join(self._path, index))

    def __len__(self) -> int:
        return len(self._document)

    def __getitem__(self, index: Any) -> Any:
        if isinstance(index, slice):
            positions = range(len(self._document))[index]
            return [self._wrap(self._document[i], i) for i in positions]
        return self._wrap(self._document[index], index)

    def __setitem__(self, index: Any, value: Any) -> None:
        if isinstance(index, slice):
            self._document[index] = [self._validate(item, i) for i, item in enumerate(value)]
        else:
            self._document[index] = self._validate(value, index)

    def __delitem__(self, index: Any) -> None:
        items = self._document[index] if isinstance(index, slice) else [self._document[index]]
        for item in items:
            self._views.pop(id(item), None)
        del self._document[index]

    def insert(self, index: int, value: Any) -> None:
        self._document.insert(index, self._validate(value, index))

    def push(self, *values: Any) -> int:
        """Append validated ``values`` and return the new length."""
        for value in values:
            self.append(value)
        return len(self._document)

    def find(self, query: Any) -> List[Any]:
        """Matching entries (views for embedded documents)."""
        if self._embedded:
            return [self._wrap(item, i) for i, item in enumerate(self._document) if arrays.matches(query, item)]
        return arrays.simple_find(query, self._document)

    def find_one(self, query: Any) -> Any:
        """First matching entry or ``None``."""
        if self._embedded:
            index = arrays.index_of(query, self._document)
            return self._wrap(self._document[index], index) if index >= 0 else None
        return arrays.simple_find_one(query, self._document)

    def find_by_id(self, id: Any) -> Any:
        """Embedded entry whose ``_id`` equals ``id``, or ``None``.

        Raises:
            InvalidIdentifierError: If ``id`` is not an ObjectId or 24-hex string
        """
        item = arrays.find_by_id(id, self._document)
        if item is None:
            return None
        index = next(i for i, candidate in enumerate(self._document) if candidate is item)
        return self._wrap(item, index)

    def index_of(self, query: Any) -> int:
        """Index of the first matching entry, or -1."""
        if self._embedded:
            return arrays.index_of(query, self._document)
        return arrays.simple_index_of(query, self._document)

    def remove_where(self, query: Any) -> int:
        """Remove every matching entry in place and return how many went.

        ``remove(value)`` keeps the list semantics: first equal entry, or
        ValueError.
        """
        if self._embedded:
            return arrays.remove(query, self._document)
        return arrays.simple_remove(query, self._document)

    def to_list(self) -> List[Any]:
        """Deep copy of the stored list."""
        return copy.deepcopy(self._document)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, DocumentArray):
            return self._document == other._document
        if isinstance(other, (list, tuple)):
            return self._document == list(other)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"DocumentArray({self._document!r})"
