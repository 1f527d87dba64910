"""
Views: read-only compositions of several models.

A View loads one document of a base model and replaces selected fields by
what they reference:

    >>> BookView = View(Book, {
    ...     "author": Author,                  # single reference: find_by_id
    ...     "reviews": [Review],               # array of references: load_db_ref
    ...     "stats": load_stats,               # async fn(value, document)
    ... })
    >>> book = await BookView.find_by_id(book_id)
    >>> book.author.name
    'Frank Herbert'

Invariants:
    - Resolver kinds are classified once, when the View is built
    - Resolutions run concurrently; the result is returned only when all of
      them succeeded, otherwise the first error is raised
    - The returned document is frozen; it is never written back to storage
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from .document import BaseDocument, DocumentArray
from .errors import SchemaDefinitionError
from .model import Model
from .options import split_options
from .parallel import fan_out

logger = logging.getLogger(__name__)


class ResolverKind(Enum):
    """How a mapped field is resolved."""

    SINGLE_REF = "single_ref"
    ARRAY_REF = "array_ref"
    GENERIC = "generic"


@dataclass(frozen=True)
class Resolver:
    """Resolution rule for one field of the base document."""

    field: str
    kind: ResolverKind
    target: Any


def freeze(value: Any) -> Any:
    """Immutable copy: mappings become FrozenDocument, lists become tuples."""
    if isinstance(value, FrozenDocument):
        return value
    if isinstance(value, Mapping):
        return FrozenDocument({key: freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    return value


def _plain(value: Any) -> Any:
    if isinstance(value, (BaseDocument, FrozenDocument)):
        return value.to_dict()
    if isinstance(value, DocumentArray):
        return value.to_list()
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


class FrozenDocument(Mapping):
    """Read-only document with attribute access.

    Example:
        >>> doc = freeze({"name": "Bob", "tags": ["a"]})
        >>> doc.name, doc["tags"]
        ('Bob', ('a',))
    """

    __slots__ = ("_data",)

    def __init__(self, data: Dict[str, Any]) -> None:
        object.__setattr__(self, "_data", data)

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __getattr__(self, name: str) -> Any:
        try:
            return self._data[name]
        except KeyError:
            raise AttributeError(name) from None

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(f"{type(self).__name__} is read-only")

    def __delattr__(self, name: str) -> None:
        raise AttributeError(f"{type(self).__name__} is read-only")

    def __hash__(self) -> int:
        raise TypeError(f"unhashable type: '{type(self).__name__}'")

    def __repr__(self) -> str:
        return f"FrozenDocument({self._data!r})"

    def to_dict(self) -> Dict[str, Any]:
        """Mutable deep copy."""

        def thaw(value: Any) -> Any:
            if isinstance(value, FrozenDocument):
                return {key: thaw(item) for key, item in value._data.items()}
            if isinstance(value, tuple):
                return [thaw(item) for item in value]
            return copy.deepcopy(value)

        return thaw(self)


def _classify(field_name: str, target: Any) -> Resolver:
    if isinstance(target, list):
        if len(target) == 1 and callable(getattr(target[0], "load_db_ref", None)):
            return Resolver(field_name, ResolverKind.ARRAY_REF, target[0])
        raise SchemaDefinitionError(
            f"View field {field_name} must map to a single model type in a list",
            field_name=field_name,
        )
    if callable(getattr(target, "find_by_id", None)):
        return Resolver(field_name, ResolverKind.SINGLE_REF, target)
    if callable(target):
        return Resolver(field_name, ResolverKind.GENERIC, target)
    raise SchemaDefinitionError(f"View field {field_name} has no resolver", field_name=field_name)


class View:
    """Read-only join of a base model with referenced models.

    Attributes:
        base: Model type the documents are loaded from
        resolvers: Resolution rule per mapped field
    """

    def __init__(self, base: Any, mapping: Mapping[str, Any]) -> None:
        if not (isinstance(base, type) and issubclass(base, Model)):
            raise SchemaDefinitionError("View base must be a model type")
        self.base = base
        self.resolvers: List[Resolver] = [_classify(name, target) for name, target in mapping.items()]

    def __repr__(self) -> str:
        return f"View({getattr(self.base, '__name__', self.base)!r}, {[r.field for r in self.resolvers]})"

    async def _resolve(self, resolver: Resolver, document: Dict[str, Any], results: Dict[str, Any]) -> None:
        value = document.get(resolver.field)
        if resolver.kind is ResolverKind.ARRAY_REF:
            result = await resolver.target.load_db_ref(value)
        elif resolver.kind is ResolverKind.SINGLE_REF:
            result = await resolver.target.find_by_id(value) if value is not None else None
        else:
            result = await resolver.target(value, document)
        results[resolver.field] = result

    async def compose(self, document: Optional[Dict[str, Any]]) -> Optional[FrozenDocument]:
        """Resolve every mapped field present on ``document`` and freeze it."""
        if document is None:
            return None
        results: Dict[str, Any] = {}
        await fan_out(
            [self._resolve(resolver, document, results) for resolver in self.resolvers if resolver.field in document]
        )

        for name, result in results.items():
            document[name] = copy.deepcopy(_plain(result))
        logger.debug(
            "View composed",
            extra={"base": getattr(self.base, "__name__", repr(self.base)), "fields": list(results)},
        )
        return freeze(document)

    def _base_options(self, options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        options = split_options(options)
        options["direct_object"] = True
        return options

    async def find_by_id(self, id: Any, options: Optional[Dict[str, Any]] = None) -> Optional[FrozenDocument]:
        """Composed document by id, or ``None``."""
        document = await self.base.find_by_id(id, None, self._base_options(options))
        return await self.compose(document)

    async def find_one(self, query: Mapping[str, Any], options: Optional[Dict[str, Any]] = None) -> Optional[FrozenDocument]:
        """First matching composed document, or ``None``."""
        document = await self.base.find_one(query, None, self._base_options(options))
        return await self.compose(document)

    async def load_db_ref(self, ids: Any, fields: Any = None, options: Optional[Dict[str, Any]] = None) -> Any:
        """Composed documents for ``ids``, positions preserved."""
        if ids is None:
            return []
        if not isinstance(ids, (list, tuple)):
            return await self.find_by_id(ids, options)
        documents = await self.base.load_db_ref(ids, None, self._base_options(options))
        results: List[Any] = [None] * len(documents)

        async def compose_at(index: int, document: Any) -> None:
            results[index] = await self.compose(copy.deepcopy(document))

        await fan_out([compose_at(i, document) for i, document in enumerate(documents)])
        return results
