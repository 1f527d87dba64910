"""
JSON-schema environment.

Models may declare a ``json_schema`` (an inline schema or the URI of a
schema added to the environment). It is checked on every write, after the
compiled field schema.

    >>> env = SchemaEnvironment()
    >>> env.add_schema({"type": "string", "pattern": "^[0-9a-f]{24}$"}, "urn:docodm:ObjectId")
    >>> env.add_schema({
    ...     "$id": "urn:app:BattleSession",
    ...     "type": "object",
    ...     "properties": {"_id": {"$ref": "urn:docodm:ObjectId"}, "seed": {"type": "number"}},
    ... })
    >>> env.validate({"seed": "x"}, "urn:app:BattleSession")
    ["$.seed: 'x' is not of type 'number'"]

Instances are converted before checking: ObjectId becomes its hex string,
datetime its ISO-8601 string, Binary and bytes their hex encoding.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT7

from .errors import SchemaDefinitionError

logger = logging.getLogger(__name__)

SchemaRef = Union[str, Mapping[str, Any]]


def to_json_compatible(value: Any) -> Any:
    """Copy ``value`` with BSON types replaced by JSON-schema friendly ones."""
    if isinstance(value, Mapping):
        return {str(key): to_json_compatible(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_compatible(item) for item in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    return value


class SchemaEnvironment:
    """Registry of JSON schemas addressable by URI."""

    def __init__(self) -> None:
        self.schemas: Dict[str, Dict[str, Any]] = {}
        self._registry: Registry = Registry()

    def add_schema(self, schema: Optional[Mapping[str, Any]], uri: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Register ``schema`` under ``uri`` (or its ``$id``/``id``).

        Returns:
            The registered schema, or ``None`` if ``schema`` is empty

        Raises:
            SchemaDefinitionError: If the schema is invalid or the URI has a
                fragment
        """
        if not schema:
            return None

        schema = dict(schema)
        uri = uri or schema.get("$id") or schema.get("id")
        try:
            Draft7Validator.check_schema(schema)
        except SchemaError as e:
            raise SchemaDefinitionError(f"Invalid JSON schema {uri or ''}: {e.message}".strip()) from e

        if uri:
            if "#" in uri:
                raise SchemaDefinitionError(f"Schema URI must not contain a fragment: {uri}")
            self.schemas[uri] = schema
            resource = Resource.from_contents(schema, default_specification=DRAFT7)
            self._registry = self._registry.with_resource(uri, resource)
            logger.debug("JSON schema registered", extra={"uri": uri})
        return schema

    def resolve(self, schema: SchemaRef) -> Dict[str, Any]:
        """Return the schema for a URI or pass a mapping through."""
        if isinstance(schema, str):
            if schema not in self.schemas:
                raise SchemaDefinitionError(f"Unknown JSON schema: {schema}")
            return self.schemas[schema]
        return dict(schema)

    def validate(self, instance: Any, schema: SchemaRef) -> List[str]:
        """Check ``instance`` and return its error messages (empty if valid)."""
        if not isinstance(instance, Mapping) and callable(getattr(instance, "to_dict", None)):
            instance = instance.to_dict()
        validator = Draft7Validator(self.resolve(schema), registry=self._registry)
        errors = sorted(validator.iter_errors(to_json_compatible(instance)), key=lambda e: e.json_path)
        return [f"{error.json_path}: {error.message}" for error in errors]
