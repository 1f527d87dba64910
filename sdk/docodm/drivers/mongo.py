"""
MongoDB storage driver backed by ``pymongo.AsyncMongoClient``.

Invariants:
    - Documents handed to pymongo are shallow copies, so the driver never
      writes a generated ``_id`` back into caller state
    - pymongo exceptions propagate unchanged, except connect failures which
      surface as ConnectionError
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, List, Optional

from bson import ObjectId
from pymongo import AsyncMongoClient
from pymongo.asynchronous.collection import AsyncCollection
from pymongo.errors import PyMongoError

from ..errors import ConnectionError
from .base import Document, Options

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_MS = 5000


def _sort(sort: Any) -> Optional[List[tuple]]:
    if not sort:
        return None
    if isinstance(sort, Mapping):
        return list(sort.items())
    if isinstance(sort, str):
        return [(sort, 1)]
    return [tuple(item) for item in sort]


def _cursor_kwargs(options: Options) -> dict:
    options = options or {}
    kwargs = {}
    sort = _sort(options.get("sort"))
    if sort:
        kwargs["sort"] = sort
    if options.get("skip"):
        kwargs["skip"] = options["skip"]
    if options.get("limit"):
        kwargs["limit"] = options["limit"]
    return kwargs


class MongoDriver:
    """StorageDriver implementation for a MongoDB deployment.

    Attributes:
        url: MongoDB connection string
        database: Database name; defaults to the one named in ``url``

    Example:
        >>> driver = MongoDriver("mongodb://localhost:27017", database="app")
        >>> await driver.connect()
        >>> users = await driver.collection("users")
    """

    def __init__(
        self,
        url: str,
        database: Optional[str] = None,
        connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS,
    ) -> None:
        self.url = url
        self.database = database
        self.connect_timeout_ms = connect_timeout_ms
        self._client: Optional[AsyncMongoClient] = None
        self._db = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Create the client and ping the server.

        Raises:
            ConnectionError: If the server cannot be reached
        """
        client: AsyncMongoClient = AsyncMongoClient(
            self.url,
            serverSelectionTimeoutMS=self.connect_timeout_ms,
            connectTimeoutMS=self.connect_timeout_ms,
        )
        try:
            await client.admin.command("ping")
        except PyMongoError as e:
            await client.close()
            raise ConnectionError(f"Failed to connect to MongoDB: {e}", url=self.url) from e

        self._client = client
        self._db = client[self.database] if self.database else client.get_default_database()
        logger.info("Connected to MongoDB", extra={"database": self._db.name})

    async def close(self) -> None:
        """Close the client."""
        if self._client is not None:
            await self._client.close()
            self._client = None
            self._db = None
            logger.info("MongoDB connection closed")

    async def collection(self, name: str, options: Options = None) -> AsyncCollection:
        if self._db is None:
            raise ConnectionError("Not connected", url=self.url)
        return self._db.get_collection(name)

    async def find_one(
        self,
        collection: AsyncCollection,
        query: Mapping[str, Any],
        fields: Optional[Mapping[str, Any]] = None,
        options: Options = None,
    ) -> Optional[Document]:
        kwargs = _cursor_kwargs(options)
        kwargs.pop("limit", None)
        return await collection.find_one(query, fields or None, **kwargs)

    async def find(
        self,
        collection: AsyncCollection,
        query: Mapping[str, Any],
        fields: Optional[Mapping[str, Any]] = None,
        options: Options = None,
    ) -> List[Document]:
        cursor = collection.find(query, fields or None, **_cursor_kwargs(options))
        return await cursor.to_list(None)

    async def count(self, collection: AsyncCollection, query: Mapping[str, Any], options: Options = None) -> int:
        return await collection.count_documents(query or {})

    async def insert(
        self, collection: AsyncCollection, documents: List[Mapping[str, Any]], options: Options = None
    ) -> List[ObjectId]:
        result = await collection.insert_many([dict(document) for document in documents])
        return list(result.inserted_ids)

    async def save(self, collection: AsyncCollection, document: Mapping[str, Any], options: Options = None) -> ObjectId:
        if document.get("_id") is not None:
            await collection.replace_one({"_id": document["_id"]}, dict(document), upsert=True)
            return document["_id"]
        result = await collection.insert_one(dict(document))
        return result.inserted_id

    async def update(
        self,
        collection: AsyncCollection,
        criteria: Mapping[str, Any],
        document: Mapping[str, Any],
        options: Options = None,
    ) -> int:
        options = options or {}
        upsert = bool(options.get("upsert"))
        if not any(key.startswith("$") for key in document):
            replacement = {key: value for key, value in document.items() if key != "_id"}
            result = await collection.replace_one(criteria, replacement, upsert=upsert)
        elif options.get("multi"):
            result = await collection.update_many(criteria, document, upsert=upsert)
        else:
            result = await collection.update_one(criteria, document, upsert=upsert)
        return result.matched_count

    async def remove(self, collection: AsyncCollection, query: Mapping[str, Any], options: Options = None) -> int:
        result = await collection.delete_many(query or {})
        return result.deleted_count

    async def ensure_index(self, collection: AsyncCollection, spec: Mapping[str, Any], options: Options = None) -> str:
        options = options or {}
        kwargs = {key: options[key] for key in ("unique", "sparse", "name", "background") if key in options}
        if "ttl" in options:
            kwargs["expireAfterSeconds"] = options["ttl"]
        return await collection.create_index(list(spec.items()), **kwargs)
