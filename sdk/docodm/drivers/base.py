"""
Storage driver protocol.

The ODM talks to the document store only through this interface. Drivers
return plain dicts and never hand out references to their internal storage.

Invariants:
    - ``collection()`` returns an opaque handle; every other operation takes
      such a handle as its first argument
    - Documents passed in are never mutated by the driver; ``save`` and
      ``insert`` report assigned ids through their return value
    - Driver errors propagate unchanged to the caller

How to change safely:
    - Protocol changes require updating every driver
    - Unknown option keys must be ignored, not rejected
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

from bson import ObjectId

Document = Dict[str, Any]
Options = Optional[Dict[str, Any]]


@runtime_checkable
class StorageDriver(Protocol):
    """Protocol for document store backends.

    Example:
        >>> driver = MemoryDriver()
        >>> await driver.connect()
        >>> users = await driver.collection("users")
        >>> _id = await driver.save(users, {"name": "Bob"})
        >>> await driver.find_one(users, {"_id": _id})
        {'_id': ObjectId('...'), 'name': 'Bob'}
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection.

        Raises:
            ConnectionError: If the store cannot be reached
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the connection."""
        ...

    @abstractmethod
    async def collection(self, name: str, options: Options = None) -> Any:
        """Return a handle for collection ``name``."""
        ...

    @abstractmethod
    async def find_one(
        self,
        collection: Any,
        query: Mapping[str, Any],
        fields: Optional[Mapping[str, Any]] = None,
        options: Options = None,
    ) -> Optional[Document]:
        """First matching document or ``None``.

        Options understood: ``sort``, ``skip``.
        """
        ...

    @abstractmethod
    async def find(
        self,
        collection: Any,
        query: Mapping[str, Any],
        fields: Optional[Mapping[str, Any]] = None,
        options: Options = None,
    ) -> List[Document]:
        """All matching documents.

        Options understood: ``sort``, ``skip``, ``limit``.
        """
        ...

    @abstractmethod
    async def count(self, collection: Any, query: Mapping[str, Any], options: Options = None) -> int:
        """Number of matching documents."""
        ...

    @abstractmethod
    async def insert(
        self, collection: Any, documents: List[Mapping[str, Any]], options: Options = None
    ) -> List[ObjectId]:
        """Insert documents and return their ids in order."""
        ...

    @abstractmethod
    async def save(self, collection: Any, document: Mapping[str, Any], options: Options = None) -> ObjectId:
        """Insert (no ``_id``) or replace (with ``_id``) a document.

        Returns:
            The document id, assigned by the store on first insert
        """
        ...

    @abstractmethod
    async def update(
        self,
        collection: Any,
        criteria: Mapping[str, Any],
        document: Mapping[str, Any],
        options: Options = None,
    ) -> int:
        """Apply an update document (operators or full replacement).

        Options understood: ``multi`` (update every match), ``upsert``.

        Returns:
            Number of matched documents
        """
        ...

    @abstractmethod
    async def remove(self, collection: Any, query: Mapping[str, Any], options: Options = None) -> int:
        """Delete every matching document and return how many were removed."""
        ...

    @abstractmethod
    async def ensure_index(self, collection: Any, spec: Mapping[str, Any], options: Options = None) -> str:
        """Create an index if missing and return its name."""
        ...


def index_name(spec: Mapping[str, Any]) -> str:
    """Index name in the store's ``field_direction`` convention."""
    return "_".join(f"{key}_{direction}" for key, direction in spec.items())
