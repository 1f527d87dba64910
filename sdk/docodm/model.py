"""
Collection-bound models.

A Model subclass binds a compiled schema to one collection:

    >>> @odm.register
    ... class User(Model):
    ...     collection = "users"
    ...     schema = {"name": field(str, required=True), "email": str, "age": int}
    ...     cache = True
    >>> user = User({"name": "Bob", "age": "42"})
    >>> await user.save()
    ObjectId('...')
    >>> await User.ensure_index({"email": 1}, {"unique": True})
    >>> await User.find_by_email("bob@example.com")

Cache keys:
    - ``_id:<hex>``: by-id lookups
    - ``<field>:<repr of value>``: generated ``find_by_<field>`` lookups
    - ``::all``: ``find_all``

Invariants:
    - Validation and identifier errors are raised before any storage call
    - The cache stores raw documents (copied in and out), never instances;
      a miss is stored as NOT_FOUND so repeated misses skip storage
    - Lookups with a projection or ``pluck`` bypass the cache
    - Every instance mutation purges ``::all``, the document's ``_id`` key
      and every registered index bucket; query-wide mutations reset the
      whole model cache
    - A removed instance refuses update/reload/remove until saved again

How to change safely:
    - Any new mutation path must call ``_purge`` or ``_reset_cache``
    - Keep option extraction on a copy of the caller's options
"""

from __future__ import annotations

import copy
import logging
import random
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Union

from bson import ObjectId

from .cache import Cache
from .connection import Connection
from .document import BaseDocument
from .errors import (
    BadQueryError,
    ConnectionError,
    InvalidIdentifierError,
    NotFoundError,
    SchemaDefinitionError,
    StaleInstanceError,
)
from .ids import to_object_id
from .options import extract_option, split_options
from .parallel import Finder
from .paths import deep_get

logger = logging.getLogger(__name__)

ALL_KEY = "::all"
NOT_FOUND = object()

Options = Optional[Dict[str, Any]]
Fields = Optional[Dict[str, Any]]


def build_cache(setting: Any, cache_size: Optional[int] = None, ttl: Optional[int] = None) -> Optional[Cache]:
    """Cache for a model's ``cache`` class attribute.

    ``True`` uses the given defaults, a mapping may override ``cache_size``
    and ``ttl``, a Cache instance is used as is.
    """
    if not setting:
        return None
    if isinstance(setting, Cache):
        return setting
    if isinstance(setting, Mapping):
        return Cache(
            cache_size=setting.get("cache_size", cache_size),
            ttl=setting.get("ttl", ttl),
        )
    return Cache(cache_size=cache_size, ttl=ttl)


class Model(BaseDocument):
    """Document stored in a collection.

    Class attributes:
        collection: Collection name
        schema: Schema definition
        json_schema: Optional JSON schema checked on write
        cache: ``True``, ``{"cache_size": ..., "ttl": ...}`` or a Cache to
            enable the lookup cache
    """

    collection: ClassVar[Optional[str]] = None
    cache: ClassVar[Any] = False

    _cache: ClassVar[Optional[Cache]] = None
    _index_keys: ClassVar[List[str]] = []

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        cls._index_keys = []
        cls._cache = build_cache(cls.cache)

    @classmethod
    def _connection(cls) -> Connection:
        if not cls.collection:
            raise SchemaDefinitionError(f"{cls.__name__} has no collection")
        if cls._odm is None:
            raise ConnectionError(f"{cls.__name__} is not bound to an Odm")
        return cls._odm.connection

    @classmethod
    def _read_options(cls, fields: Fields, options: Options) -> Tuple[Dict[str, Any], Fields, bool, Optional[str]]:
        options = split_options(options)
        direct = bool(extract_option("direct_object", options, False))
        pluck = extract_option("pluck", options)
        if pluck and not fields:
            fields = {pluck: 1}
        return options, fields, direct, pluck

    @classmethod
    def _present(cls, raw: Optional[Dict[str, Any]], direct: bool, pluck: Optional[str]) -> Any:
        if raw is None:
            return None
        if pluck:
            return deep_get(raw, pluck)
        if direct:
            return raw
        return cls.wrap(raw)

    @classmethod
    async def _cached_find_one(
        cls,
        key: str,
        query: Mapping[str, Any],
        fields: Fields,
        options: Dict[str, Any],
        use_cache: bool,
    ) -> Optional[Dict[str, Any]]:
        cache = cls._cache if use_cache else None
        if cache is not None:
            hit = cache.get(key)
            if hit is not None:
                logger.debug("Cache hit", extra={"model": cls.__name__, "key": key})
                return None if hit is NOT_FOUND else copy.deepcopy(hit)

        raw = await cls._connection().find_one(cls.collection, query, fields, options)
        if cache is not None:
            cache.set(key, NOT_FOUND if raw is None else copy.deepcopy(raw))
        return raw

    @classmethod
    def _purge(cls, document_id: Any = None) -> None:
        cache = cls._cache
        if cache is None:
            return
        cache.delete(ALL_KEY)
        if document_id is not None:
            cache.delete(f"_id:{document_id}")
        for name in cls._index_keys:
            cache.purge_prefix(f"{name}:")

    @classmethod
    def _reset_cache(cls) -> None:
        if cls._cache is not None:
            cls._cache.reset()

    @classmethod
    async def find_one(cls, query: Mapping[str, Any], fields: Fields = None, options: Options = None) -> Any:
        """First matching document, or ``None``.

        Options:
            direct_object: Return the raw dict instead of an instance
            pluck: Return only the value of this field
            random: Pick a random matching document
        """
        options, fields, direct, pluck = cls._read_options(fields, options)
        if extract_option("random", options, False):
            total = await cls._connection().count(cls.collection, query, options)
            if total == 0:
                return None
            options["skip"] = random.randrange(total)

        raw = await cls._connection().find_one(cls.collection, query, fields, options)
        return cls._present(raw, direct, pluck)

    @classmethod
    async def find_by_id(cls, id: Union[ObjectId, str], fields: Fields = None, options: Options = None) -> Any:
        """Document by id.

        Args:
            id: ObjectId or its 24-hex string
            fields: Optional projection (bypasses the cache)
            options: ``include_not_found`` (default True: a miss returns
                ``None``; False: a miss raises NotFoundError), plus the
                options of ``find_one``

        Raises:
            InvalidIdentifierError: Before any storage call, if ``id`` is malformed
            NotFoundError: On a miss with ``include_not_found=False``
        """
        _id = to_object_id(id)
        options, fields, direct, pluck = cls._read_options(fields, options)
        include_not_found = extract_option("include_not_found", options, True)

        raw = await cls._cached_find_one(f"_id:{_id}", {"_id": _id}, fields, options, use_cache=not fields)
        if raw is None and not include_not_found:
            raise NotFoundError(cls.collection, _id)
        return cls._present(raw, direct, pluck)

    @classmethod
    async def find(cls, query: Mapping[str, Any], fields: Fields = None, options: Options = None) -> Any:
        """All matching documents; never cached.

        Options:
            direct_object, pluck: As in ``find_one``
            count: Return the number of matches instead
        """
        options, fields, direct, pluck = cls._read_options(fields, options)
        if extract_option("count", options, False):
            return await cls._connection().count(cls.collection, query, options)

        docs = await cls._connection().find(cls.collection, query, fields, options)
        return [cls._present(raw, direct, pluck) for raw in docs]

    @classmethod
    async def find_all(cls, fields: Fields = None, options: Options = None) -> List[Any]:
        """Every document; cached under ``::all`` when no projection or cursor option is given."""
        options, fields, direct, pluck = cls._read_options(fields, options)
        cache = cls._cache if not fields and not options else None

        docs = None
        if cache is not None:
            hit = cache.get(ALL_KEY)
            if hit is not None:
                logger.debug("Cache hit", extra={"model": cls.__name__, "key": ALL_KEY})
                docs = copy.deepcopy(hit)
        if docs is None:
            docs = await cls._connection().find(cls.collection, {}, fields, options)
            if cache is not None:
                cache.set(ALL_KEY, copy.deepcopy(docs))
        return [cls._present(raw, direct, pluck) for raw in docs]

    @classmethod
    async def count(cls, query: Optional[Mapping[str, Any]] = None, options: Options = None) -> int:
        """Number of matching documents."""
        return await cls._connection().count(cls.collection, query or {}, split_options(options))

    @classmethod
    async def load_db_ref(cls, ids: Any, fields: Fields = None, options: Options = None) -> Any:
        """Resolve references.

        ``None`` gives ``[]``; a single id behaves like ``find_by_id``. For a
        list, ``result[i]`` is the document for ``ids[i]`` (``None`` when it
        does not exist); duplicates resolve to the same document and one
        batched query fetches every id the cache does not hold.

        Raises:
            InvalidIdentifierError: Before any storage call, if an element
                is not an id
        """
        if ids is None:
            return []
        if not isinstance(ids, (list, tuple)):
            return await cls.find_by_id(ids, fields, options)

        object_ids = [to_object_id(value) for value in ids]
        options, fields, direct, pluck = cls._read_options(fields, options)
        cache = cls._cache if not fields else None

        found: Dict[ObjectId, Optional[Dict[str, Any]]] = {}
        misses: List[ObjectId] = []
        for _id in dict.fromkeys(object_ids):
            hit = cache.get(f"_id:{_id}") if cache is not None else None
            if hit is None:
                misses.append(_id)
            else:
                found[_id] = None if hit is NOT_FOUND else copy.deepcopy(hit)

        if misses:
            docs = await cls._connection().find(cls.collection, {"_id": {"$in": misses}}, fields, options)
            for raw in docs:
                found[raw["_id"]] = raw
                if cache is not None:
                    cache.set(f"_id:{raw['_id']}", copy.deepcopy(raw))
            if cache is not None:
                for _id in misses:
                    if _id not in found:
                        cache.set(f"_id:{_id}", NOT_FOUND)

        resolved = {_id: cls._present(raw, direct, pluck) for _id, raw in found.items()}
        return [resolved.get(_id) for _id in object_ids]

    @classmethod
    async def ensure_index(cls, spec: Union[str, Mapping[str, Any]], options: Options = None) -> str:
        """Create an index and, for a single plain field, a ``find_by_<field>`` finder.

        Args:
            spec: Field name or ``{field: direction, ...}``
            options: Index options for the store; ``generate_finder=False``
                skips the finder

        Returns:
            Index name reported by the store
        """
        options = split_options(options)
        generate = extract_option("generate_finder", options, True)
        if isinstance(spec, str):
            spec = {spec: 1}

        name = await cls._connection().ensure_index(cls.collection, spec, options)

        keys = list(spec)
        if generate and len(keys) == 1 and "." not in keys[0] and keys[0] != "_id":
            cls._install_finder(keys[0])
        return name

    @classmethod
    def _install_finder(cls, field_name: str) -> None:
        attribute = f"find_by_{field_name}"
        existing = getattr(cls, attribute, None)
        if existing is not None and not getattr(existing, "_generated_finder", False):
            logger.warning(
                "Finder not generated, name already in use",
                extra={"model": cls.__name__, "finder": attribute},
            )
            return

        async def finder(klass: type, value: Any, fields: Fields = None, options: Options = None) -> Any:
            options, fields, direct, pluck = klass._read_options(fields, options)
            unique = extract_option("unique", options, False)
            raw = await klass._cached_find_one(
                f"{field_name}:{value!r}", {field_name: value}, fields, options, use_cache=not fields
            )
            if raw is None and unique:
                raise NotFoundError(klass.collection, value)
            return klass._present(raw, direct, pluck)

        finder.__name__ = attribute
        finder.__qualname__ = f"{cls.__name__}.{attribute}"
        finder.__doc__ = (
            f"Document whose {field_name} equals ``value``; ``unique=True`` makes a miss raise NotFoundError."
        )
        finder._generated_finder = True  # type: ignore[attr-defined]
        setattr(cls, attribute, classmethod(finder))
        if field_name not in cls._index_keys:
            cls._index_keys.append(field_name)

    @classmethod
    async def remove_where(cls, query: Mapping[str, Any], options: Options = None) -> int:
        """Delete every matching document."""
        removed = await cls._connection().remove(cls.collection, query, split_options(options))
        cls._reset_cache()
        return removed

    @classmethod
    async def insert_documents(cls, documents: Union[Mapping[str, Any], List[Mapping[str, Any]]], options: Options = None) -> List[ObjectId]:
        """Insert raw documents as given."""
        if isinstance(documents, Mapping):
            documents = [documents]
        ids = await cls._connection().insert(cls.collection, list(documents), split_options(options))
        cls._reset_cache()
        return ids

    @classmethod
    async def update_where(cls, query: Mapping[str, Any], document: Mapping[str, Any], options: Options = None) -> int:
        """Apply ``document`` (operators or replacement) to matching documents."""
        matched = await cls._connection().update(cls.collection, query, document, split_options(options))
        cls._reset_cache()
        return matched

    @classmethod
    async def save_document(cls, document: Mapping[str, Any], options: Options = None) -> ObjectId:
        """Insert or replace a raw document."""
        _id = await cls._connection().save(cls.collection, document, split_options(options))
        cls._reset_cache()
        return _id

    @classmethod
    def prepare_find_one(cls, query: Mapping[str, Any], fields: Fields = None, options: Options = None) -> Finder:
        return Finder(cls.find_one, query, fields, options)

    @classmethod
    def prepare_find_by_id(cls, id: Any, fields: Fields = None, options: Options = None) -> Finder:
        return Finder(cls.find_by_id, id, fields, options)

    @classmethod
    def prepare_find(cls, query: Mapping[str, Any], fields: Fields = None, options: Options = None) -> Finder:
        return Finder(cls.find, query, fields, options)

    @classmethod
    def prepare_find_all(cls, fields: Fields = None, options: Options = None) -> Finder:
        return Finder(cls.find_all, None, fields, options, takes_query=False)

    def _check_removed(self) -> None:
        if self._removed:
            raise StaleInstanceError(type(self).collection, self._id)

    def _require_id(self) -> Any:
        if self._id is None:
            raise InvalidIdentifierError(None, "document has no _id")
        return self._id

    async def save(self, options: Options = None) -> ObjectId:
        """Validate and insert or replace this document.

        Returns:
            The document id (assigned on first save)

        Raises:
            ValidationError: Before any storage call
        """
        document = self.validate()
        _id = await self._connection().save(self.collection, document, split_options(options))
        self._document["_id"] = _id
        self._removed = False
        type(self)._purge(_id)
        return _id

    async def insert(self, options: Options = None) -> ObjectId:
        """Validate and insert this document."""
        document = self.validate()
        ids = await self._connection().insert(self.collection, [document], split_options(options))
        self._document["_id"] = ids[0]
        self._removed = False
        type(self)._purge(ids[0])
        return ids[0]

    async def update(self, partial: Optional[Mapping[str, Any]] = None, options: Options = None) -> int:
        """Write changes of this document.

        Args:
            partial: Update document; ``$setpath`` (a dotted path or list of
                paths) validates the document and copies the current value at
                each path into ``$set``. Without ``partial`` the whole
                validated document replaces the stored one.
            options: Store options (``upsert``)

        Returns:
            Number of matched documents

        Raises:
            BadQueryError: If a ``$setpath`` entry is not a string or names a
                field the schema does not define
            ValidationError: If ``$setpath`` is given and the document is invalid
            StaleInstanceError: If the instance was removed
        """
        self._check_removed()
        _id = self._require_id()

        if partial is None:
            document = self.validate()
            document.pop("_id", None)
        else:
            document = copy.deepcopy(dict(partial))
            paths = document.pop("$setpath", None)
            if paths is not None:
                if isinstance(paths, str):
                    paths = [paths]
                if not isinstance(paths, (list, tuple)) or not all(isinstance(path, str) for path in paths):
                    raise BadQueryError("$setpath expects a dotted path or a list of dotted paths")
                node = type(self).compiled_schema()
                for path in paths:
                    if not node.allows(path.split(".", 1)[0]):
                        raise BadQueryError(f"$setpath {path} is not defined in the document")
                validated = self.validate()
                updates = document.setdefault("$set", {})
                for path in paths:
                    updates[path] = deep_get(validated, path)

        matched = await self._connection().update(self.collection, {"_id": _id}, document, split_options(options))
        type(self)._purge(_id)
        return matched

    async def remove(self, options: Options = None) -> int:
        """Delete this document and mark the instance removed."""
        self._check_removed()
        _id = self._require_id()
        removed = await self._connection().remove(self.collection, {"_id": _id}, split_options(options))
        type(self)._purge(_id)
        self._removed = True
        return removed

    async def reload(self, options: Options = None) -> None:
        """Replace the internal document with the stored one.

        Sub-document views handed out earlier keep the old data.

        Raises:
            InvalidIdentifierError: If ``_id`` is not an ObjectId
            NotFoundError: If the document no longer exists
        """
        self._check_removed()
        _id = self._id
        if not isinstance(_id, ObjectId):
            raise InvalidIdentifierError(_id)

        raw = await self._connection().find_one(self.collection, {"_id": _id}, None, split_options(options))
        if raw is None:
            raise NotFoundError(self.collection, _id)
        self._document = type(self).compiled_schema().validate(raw, "", loading=True)
        self._submodels.clear()
