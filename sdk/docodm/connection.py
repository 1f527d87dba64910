"""
Connection lifecycle for DocODM.

A Connection owns exactly one storage driver and caches one collection
handle per collection name. Models never hold driver state themselves;
they reach storage through the connection of the Odm they are bound to.

Invariants:
    - The driver is connected at most once; concurrent first calls wait on
      the same connect
    - Collection handles are created lazily and reused until disconnect
    - After ``disconnect()`` the next operation reconnects

How to change safely:
    - Keep every storage call going through ``_handle`` so lazy connect and
      handle caching stay in one place
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional

from bson import ObjectId

from .config import OdmSettings
from .drivers.base import Document, Options, StorageDriver
from .drivers.memory import MemoryDriver
from .drivers.mongo import MongoDriver
from .errors import ConnectionError

logger = logging.getLogger(__name__)


def driver_from_settings(settings: OdmSettings) -> StorageDriver:
    """Build the driver selected by ``settings.url``."""
    if settings.uses_memory:
        return MemoryDriver()
    if not settings.url.startswith(("mongodb://", "mongodb+srv://")):
        raise ConnectionError(f"Unsupported storage URL: {settings.url}", url=settings.url)
    return MongoDriver(
        settings.url,
        database=settings.database,
        connect_timeout_ms=settings.connect_timeout_ms,
    )


class Connection:
    """Owns a storage driver and its collection handles.

    Example:
        >>> connection = Connection(MemoryDriver())
        >>> await connection.save("users", {"name": "Bob"})
        ObjectId('...')
        >>> await connection.disconnect()
    """

    def __init__(self, driver: Optional[StorageDriver] = None, url: Optional[str] = None) -> None:
        self.driver = driver
        self.url = url
        self._connected = False
        self._lock = asyncio.Lock()
        self._collections: Dict[str, Any] = {}

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect the driver if not connected yet.

        Raises:
            ConnectionError: If no driver is configured or connect fails
        """
        if self._connected:
            return
        if self.driver is None:
            raise ConnectionError("No storage driver configured", url=self.url)

        async with self._lock:
            if self._connected:
                return
            await self.driver.connect()
            self._connected = True
        logger.info("Storage connected", extra={"driver": type(self.driver).__name__})

    async def disconnect(self) -> None:
        """Close the driver and forget collection handles."""
        if not self._connected:
            return
        async with self._lock:
            self._collections.clear()
            self._connected = False
            await self.driver.close()
        logger.info("Storage disconnected", extra={"driver": type(self.driver).__name__})

    async def collection(self, name: str, options: Options = None) -> Any:
        """Cached collection handle for ``name``."""
        await self.connect()
        handle = self._collections.get(name)
        if handle is None:
            handle = await self.driver.collection(name, options)
            self._collections[name] = handle
        return handle

    async def find_one(
        self,
        name: str,
        query: Mapping[str, Any],
        fields: Optional[Mapping[str, Any]] = None,
        options: Options = None,
    ) -> Optional[Document]:
        handle = await self.collection(name)
        return await self.driver.find_one(handle, query, fields, options)

    async def find(
        self,
        name: str,
        query: Mapping[str, Any],
        fields: Optional[Mapping[str, Any]] = None,
        options: Options = None,
    ) -> List[Document]:
        handle = await self.collection(name)
        return await self.driver.find(handle, query, fields, options)

    async def count(self, name: str, query: Mapping[str, Any], options: Options = None) -> int:
        handle = await self.collection(name)
        return await self.driver.count(handle, query, options)

    async def insert(self, name: str, documents: List[Mapping[str, Any]], options: Options = None) -> List[ObjectId]:
        handle = await self.collection(name)
        return await self.driver.insert(handle, documents, options)

    async def save(self, name: str, document: Mapping[str, Any], options: Options = None) -> ObjectId:
        handle = await self.collection(name)
        return await self.driver.save(handle, document, options)

    async def update(
        self,
        name: str,
        criteria: Mapping[str, Any],
        document: Mapping[str, Any],
        options: Options = None,
    ) -> int:
        handle = await self.collection(name)
        return await self.driver.update(handle, criteria, document, options)

    async def remove(self, name: str, query: Mapping[str, Any], options: Options = None) -> int:
        handle = await self.collection(name)
        return await self.driver.remove(handle, query, options)

    async def ensure_index(self, name: str, spec: Mapping[str, Any], options: Options = None) -> str:
        handle = await self.collection(name)
        return await self.driver.ensure_index(handle, spec, options)
