"""
Storage drivers.

- MemoryDriver: in-process store for tests and local development
- MongoDriver: MongoDB via pymongo's async client
"""

from .base import StorageDriver
from .memory import MemoryDriver
from .mongo import MongoDriver

__all__ = ["StorageDriver", "MemoryDriver", "MongoDriver"]
