"""
Odm: entry point binding settings, a connection and model types.

    >>> odm = Odm(OdmSettings(url="mongodb://localhost:27017/app"))
    >>> @odm.register
    ... class User(Model):
    ...     collection = "users"
    ...     schema = {"name": str}
    >>> async with odm:
    ...     await User({"name": "Bob"}).save()

Models are bound to exactly one Odm; the Odm owns the Connection, which
owns the storage driver.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar

from .config import OdmSettings, configure_logging
from .connection import Connection, driver_from_settings
from .document import EmbeddedModel
from .drivers.base import StorageDriver
from .model import Model, build_cache
from .parallel import Finder, parallel
from .validate import SchemaEnvironment
from .view import View

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=type)


class Odm:
    """Object-document mapper instance.

    Attributes:
        settings: Loaded settings
        connection: Connection owning the storage driver
        schemas: JSON-schema environment used by model ``json_schema``
        models: Registered model types by name
    """

    def __init__(self, settings: Optional[OdmSettings] = None, driver: Optional[StorageDriver] = None) -> None:
        """Create an Odm.

        Args:
            settings: Configuration; loaded from ``DOCODM_*`` env vars when omitted
            driver: Storage driver; built from ``settings.url`` when omitted
        """
        self.settings = settings or OdmSettings()
        configure_logging(self.settings)
        self.connection = Connection(driver or driver_from_settings(self.settings), url=self.settings.url)
        self.schemas = SchemaEnvironment()
        self.models: Dict[str, type] = {}

    async def connect(self) -> None:
        """Connect the storage driver."""
        self.settings.log_config()
        await self.connection.connect()

    async def disconnect(self) -> None:
        """Disconnect the storage driver."""
        await self.connection.disconnect()

    async def __aenter__(self) -> Odm:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.disconnect()

    def register(self, model_type: M) -> M:
        """Bind a Model or EmbeddedModel subclass to this Odm.

        Usable as a class decorator. A model declaring ``cache = True`` gets a
        cache sized from the settings.
        """
        model_type._odm = self
        if issubclass(model_type, Model) and model_type.cache:
            model_type._cache = build_cache(
                model_type.cache,
                cache_size=self.settings.cache_size,
                ttl=self.settings.cache_ttl_ms,
            )
        self.models[model_type.__name__] = model_type
        logger.debug("Model registered", extra={"model": model_type.__name__})
        return model_type

    def model(
        self,
        collection: str,
        schema: Optional[Mapping[str, Any]],
        cache: Any = False,
        json_schema: Any = None,
        name: Optional[str] = None,
    ) -> Type[Model]:
        """Create and register a Model type for ``collection``."""
        attrs = {"collection": collection, "schema": schema, "cache": cache, "json_schema": json_schema}
        model_type = type(name or _type_name(collection), (Model,), attrs)
        return self.register(model_type)

    def basic_model(self, collection: str, cache: Any = False, name: Optional[str] = None) -> Type[Model]:
        """Create and register a schema-less Model type.

        Documents keep every key as given, without coercion; values are
        reached as ``doc["key"]``. Finders, writes, the lookup cache and
        ensure_index work as for any model.
        """
        return self.model(collection, None, cache=cache, name=name)

    def embedded_model(self, schema: Mapping[str, Any], name: str = "Embedded", json_schema: Any = None) -> Type[EmbeddedModel]:
        """Create and register an EmbeddedModel type."""
        model_type = type(name, (EmbeddedModel,), {"schema": schema, "json_schema": json_schema})
        return self.register(model_type)

    def view(self, base: Type[Model], mapping: Mapping[str, Any]) -> View:
        """Build a View over ``base``."""
        return View(base, mapping)

    def create_schema(self, schema: Mapping[str, Any], uri: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Register a JSON schema, see SchemaEnvironment.add_schema."""
        return self.schemas.add_schema(schema, uri)

    def validate(self, instance: Any, schema: Any) -> List[str]:
        """Check ``instance`` against a JSON schema (or its URI)."""
        return self.schemas.validate(instance, schema)

    async def parallel(self, finders: Dict[str, Finder]) -> Dict[str, Any]:
        """Run named prepared finders concurrently."""
        return await parallel(finders)


def _type_name(collection: str) -> str:
    return "".join(part.capitalize() for part in collection.replace("-", "_").split("_")) or "Model"
