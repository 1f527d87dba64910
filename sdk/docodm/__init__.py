"""
DocODM - Object-document mapper for MongoDB-style document stores.

This package layers schema validation, caching and reference resolution on
top of a document store driver:
- Declarative schemas compiled to validators (field, special)
- Model / EmbeddedModel document types with generated accessors
- Per-model TTL cache for by-id, by-index and find-all lookups
- Order-preserving batched reference loading and read-only Views
- Storage drivers for MongoDB and for in-process memory

Example:
    >>> from sdk.docodm import Model, Odm, OdmSettings, field
    >>>
    >>> odm = Odm(OdmSettings(url="memory://"))
    >>>
    >>> @odm.register
    ... class User(Model):
    ...     collection = "users"
    ...     schema = {"name": field(str, required=True), "age": int}
    ...     cache = True
    >>>
    >>> async with odm:
    ...     user = User({"name": "Bob", "age": "42"})
    ...     await user.save()
    ...     same = await User.find_by_id(user._id)

Invariants:
    - Validation errors are raised before any storage call
    - Storage driver errors propagate unchanged
    - Models are bound to exactly one Odm

Version: 1.0.0
"""

__version__ = "1.0.0"

from .cache import Cache
from .config import OdmSettings, configure_logging
from .connection import Connection
from .document import DocumentArray, EmbeddedModel
from .drivers import MemoryDriver, MongoDriver, StorageDriver
from .errors import (
    BadQueryError,
    ConnectionError,
    EmbeddedModelError,
    InvalidIdentifierError,
    NotFoundError,
    OdmError,
    RequiredFieldMissingError,
    SchemaDefinitionError,
    StaleInstanceError,
    TypeMismatchError,
    ValidationError,
)
from .model import Model
from .odm import Odm
from .parallel import Finder, after, parallel
from .schema import compile_schema, field, special
from .validate import SchemaEnvironment
from .view import FrozenDocument, View

__all__ = [
    # Version
    "__version__",
    # Entry point
    "Odm",
    "OdmSettings",
    "configure_logging",
    # Documents
    "Model",
    "EmbeddedModel",
    "DocumentArray",
    "View",
    "FrozenDocument",
    # Schema
    "field",
    "special",
    "compile_schema",
    "SchemaEnvironment",
    # Infrastructure
    "Cache",
    "Connection",
    "StorageDriver",
    "MemoryDriver",
    "MongoDriver",
    "Finder",
    "after",
    "parallel",
    # Errors
    "OdmError",
    "ConnectionError",
    "ValidationError",
    "TypeMismatchError",
    "RequiredFieldMissingError",
    "SchemaDefinitionError",
    "InvalidIdentifierError",
    "NotFoundError",
    "BadQueryError",
    "StaleInstanceError",
    "EmbeddedModelError",
]
