"""
Schema compiler for DocODM.

This module turns a declarative schema into a tree of schema nodes:
- PrimitiveNode: leaf with type check and best-effort coercion
- ArrayNode: list whose entries are validated by an element node
- EmbeddedNode: nested document (inline dict or a model type)
- FreeNode: schema-less document, kept as given
- SpecialNode: user hook that replaces the default validator

A schema definition maps field names to descriptors:

    >>> Book = {
    ...     "title": field(str, required=True),
    ...     "year": int,
    ...     "tags": [str],
    ...     "index": {"toc": [str]},
    ...     "chapters": [Chapter],          # a model type
    ...     "isbn": special(check_isbn),
    ... }
    >>> node = compile_schema(Book)
    >>> node.validate({"title": "Dune", "year": "1965"})
    {'title': 'Dune', 'year': 1965}

Invariants:
    - Validators are pure: they return a new coerced value and never
      mutate their input
    - ``None`` is accepted by every node (intentional absence)
    - Unknown keys are logged as schema drift and dropped, except ``_id``
    - A definition is compiled once; model types and dict definitions are
      memoized by identity
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from dataclasses import field as dataclass_field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from bson import Binary, ObjectId

from .errors import (
    RequiredFieldMissingError,
    SchemaDefinitionError,
    TypeMismatchError,
)
from .ids import is_object_id_string

logger = logging.getLogger(__name__)


class _Absent:
    """Marker for a key that is not present (as opposed to ``None``)."""

    _instance: Optional[_Absent] = None

    def __new__(cls) -> _Absent:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT = _Absent()

_TRUE_STRINGS = ("true", "1")
_FALSE_STRINGS = ("false", "0")


class NodeKind(Enum):
    """Kinds of compiled schema nodes."""

    PRIMITIVE = "primitive"
    ARRAY = "array"
    EMBEDDED = "embedded"
    SPECIAL = "special"


def _join(path: str, key: Any) -> str:
    return f"{path}.{key}" if path else str(key)


@dataclass
class SchemaNode:
    """Base class of compiled schema nodes.

    Attributes:
        required: Absent values fail when validating user data
        default: Value (or zero-argument factory) used when absent
    """

    required: bool = dataclass_field(default=False, kw_only=True)
    default: Any = dataclass_field(default=ABSENT, kw_only=True)

    kind = NodeKind.PRIMITIVE

    def validate(self, value: Any = ABSENT, path: str = "", loading: bool = False) -> Any:
        """Validate and coerce ``value``.

        Args:
            value: Value to check, ``ABSENT`` if the key is missing
            path: Dotted path used in error messages
            loading: Data comes from storage; required checks and defaults
                are skipped since stored documents may be projections

        Returns:
            Coerced value, or ``ABSENT`` if the key should stay missing

        Raises:
            RequiredFieldMissingError: Required value is absent
            TypeMismatchError: Value cannot be coerced
        """
        if value is ABSENT:
            if loading:
                return ABSENT
            if self.default is not ABSENT:
                value = self.default() if callable(self.default) else copy.deepcopy(self.default)
            elif self.required:
                raise RequiredFieldMissingError(path)
            else:
                return ABSENT
        if value is None:
            return None
        return self._coerce(value, path, loading)

    def _coerce(self, value: Any, path: str, loading: bool) -> Any:
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        """Describe this node."""
        result: Dict[str, Any] = {"kind": self.kind.value}
        if self.required:
            result["required"] = True
        return result


@dataclass
class PrimitiveNode(SchemaNode):
    """Leaf node for a primitive type marker."""

    type_: type = object

    kind = NodeKind.PRIMITIVE

    @property
    def type_name(self) -> str:
        return _TYPE_NAMES.get(self.type_, self.type_.__name__)

    def _coerce(self, value: Any, path: str, loading: bool) -> Any:
        coerce = _COERCERS.get(self.type_, _coerce_any)
        result = coerce(value)
        if result is ABSENT:
            raise TypeMismatchError(path, self.type_name, value)
        return result

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["type"] = self.type_name
        return result


@dataclass
class ArrayNode(SchemaNode):
    """List node; every entry is validated by ``element``."""

    element: SchemaNode = dataclass_field(default_factory=lambda: PrimitiveNode(type_=object))

    kind = NodeKind.ARRAY

    def _coerce(self, value: Any, path: str, loading: bool) -> Any:
        if not isinstance(value, (list, tuple)) and callable(getattr(value, "to_list", None)):
            value = value.to_list()
        if not isinstance(value, (list, tuple)):
            raise TypeMismatchError(path, "array", value)
        return [self.validate_item(item, _join(path, i), loading) for i, item in enumerate(value)]

    def validate_item(self, item: Any, path: str, loading: bool = False) -> Any:
        """Validate one entry; used by materialized arrays on append."""
        result = self.element.validate(item, path, loading)
        return None if result is ABSENT else result

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["items"] = self.element.to_dict()
        return result


@dataclass
class EmbeddedNode(SchemaNode):
    """Nested document node.

    Attributes:
        fields: Compiled node per field name
        model_type: Model class the definition came from, if any; used to
            build views of embedded values with the right type
    """

    fields: Dict[str, SchemaNode] = dataclass_field(default_factory=dict)
    model_type: Optional[type] = None

    kind = NodeKind.EMBEDDED

    def _coerce(self, value: Any, path: str, loading: bool) -> Any:
        if not isinstance(value, Mapping) and callable(getattr(value, "to_dict", None)):
            value = value.to_dict()
        if not isinstance(value, Mapping):
            raise TypeMismatchError(path, "object", value)

        result: Dict[str, Any] = {}
        if "_id" in value:
            # identity is assigned by storage; never coerce or drop it
            result["_id"] = value["_id"]

        for key, node in self.fields.items():
            coerced = node.validate(value.get(key, ABSENT), _join(path, key), loading)
            if coerced is not ABSENT:
                result[key] = coerced

        for key in value:
            if key != "_id" and key not in self.fields:
                logger.warning(
                    f"{_join(path, key)} is not defined in the document",
                    extra={"path": path, "field": key, "model": self.type_name},
                )

        return result

    @property
    def type_name(self) -> str:
        return self.model_type.__name__ if self.model_type is not None else "object"

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        if self.model_type is not None:
            result["model"] = self.model_type.__name__
        result["fields"] = {key: node.to_dict() for key, node in self.fields.items()}
        return result

    def allows(self, key: str) -> bool:
        """Whether ``key`` may be stored at this level."""
        return key == "_id" or key in self.fields


@dataclass
class FreeNode(EmbeddedNode):
    """Schema-less document node.

    Every key is kept as given; nothing is coerced and no drift is logged.
    """

    def _coerce(self, value: Any, path: str, loading: bool) -> Any:
        if not isinstance(value, Mapping) and callable(getattr(value, "to_dict", None)):
            value = value.to_dict()
        if not isinstance(value, Mapping):
            raise TypeMismatchError(path, "object", value)
        return copy.deepcopy(dict(value))

    def allows(self, key: str) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["free"] = True
        return result


@dataclass
class SpecialNode(SchemaNode):
    """Node whose validation is fully delegated to a hook.

    The hook is called as ``hook(value, path)`` for present values and its
    return value becomes the stored value.
    """

    hook: Callable[[Any, str], Any] = lambda value, path: value

    kind = NodeKind.SPECIAL

    def _coerce(self, value: Any, path: str, loading: bool) -> Any:
        return self.hook(value, path)


@dataclass(frozen=True)
class FieldSpec:
    """Descriptor wrapper carrying per-field options.

    Attributes:
        descriptor: Type marker, list, dict, model type or special
        required: Whether the field must be present on write
        default: Default value or zero-argument factory
    """

    descriptor: Any
    required: bool = False
    default: Any = ABSENT


@dataclass(frozen=True)
class Special:
    """Custom validator descriptor, see ``special``."""

    hook: Callable[[Any, str], Any]


def field(descriptor: Any, *, required: bool = False, default: Any = ABSENT) -> FieldSpec:
    """Declare a field with options.

    Args:
        descriptor: Any schema descriptor
        required: Fail validation when the value is absent
        default: Value or factory used when the value is absent

    Example:
        >>> schema = {"email": field(str, required=True), "tags": field([str], default=list)}
    """
    return FieldSpec(descriptor=descriptor, required=required, default=default)


def special(hook: Callable[[Any, str], Any]) -> Special:
    """Declare a field validated by ``hook(value, path)``.

    Example:
        >>> def positive(value, path):
        ...     if value <= 0:
        ...         raise ValidationError(f"{path} must be positive", path=path)
        ...     return value
        >>> schema = {"quantity": special(positive)}
    """
    return Special(hook=hook)


def _coerce_str(value: Any) -> Any:
    return value if isinstance(value, str) else ABSENT


def _coerce_int(value: Any) -> Any:
    if isinstance(value, bool):
        return ABSENT
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return ABSENT
    return ABSENT


def _coerce_float(value: Any) -> Any:
    if isinstance(value, bool):
        return ABSENT
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return ABSENT
        return int(number) if number.is_integer() and "." not in value else number
    return ABSENT


def _coerce_bool(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return ABSENT


def _coerce_datetime(value: Any) -> Any:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            # fromisoformat only accepts a Z suffix from 3.11 on
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            return ABSENT
    return ABSENT


def _coerce_object_id(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return value
    if is_object_id_string(value):
        return ObjectId(value)
    # a referenced document (raw or model) stands for its identity
    if isinstance(value, Mapping):
        ref = value.get("_id")
    else:
        ref = getattr(value, "_id", None)
    if isinstance(ref, ObjectId):
        return ref
    return ABSENT


def _coerce_binary(value: Any) -> Any:
    if isinstance(value, Binary):
        return value
    if isinstance(value, (bytes, bytearray)):
        return Binary(bytes(value))
    return ABSENT


def _coerce_dict(value: Any) -> Any:
    if isinstance(value, Mapping):
        return copy.deepcopy(dict(value))
    return ABSENT


def _coerce_any(value: Any) -> Any:
    return copy.deepcopy(value)


_COERCERS: Dict[type, Callable[[Any], Any]] = {
    str: _coerce_str,
    int: _coerce_int,
    float: _coerce_float,
    bool: _coerce_bool,
    datetime: _coerce_datetime,
    ObjectId: _coerce_object_id,
    Binary: _coerce_binary,
    dict: _coerce_dict,
    object: _coerce_any,
}

_TYPE_NAMES: Dict[type, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    datetime: "Date",
    ObjectId: "ObjectId",
    Binary: "Binary",
    dict: "object",
    object: "any",
}

# id(definition) -> (definition, node); the definition is kept alive so the
# id cannot be reused by another object
_memo: Dict[int, Tuple[Any, EmbeddedNode]] = {}


def _is_model_type(descriptor: Any) -> bool:
    return isinstance(descriptor, type) and callable(getattr(descriptor, "compiled_schema", None))


def _build_node(key: str, descriptor: Any) -> SchemaNode:
    if descriptor is None:
        raise SchemaDefinitionError(f"Incomplete schema: {key} is undefined", field_name=key)

    if isinstance(descriptor, FieldSpec):
        node = _build_node(key, descriptor.descriptor)
        if descriptor.required or descriptor.default is not ABSENT:
            # compiled nodes can be shared by identity, never mutate them
            node = replace(node, required=descriptor.required, default=descriptor.default)
        return node

    if isinstance(descriptor, list):
        if len(descriptor) > 1:
            raise SchemaDefinitionError(
                f"Array schema for {key} must declare a single element type",
                field_name=key,
            )
        element = _build_node(key, descriptor[0]) if descriptor else PrimitiveNode(type_=object)
        return ArrayNode(element=element)

    if descriptor is list:
        return ArrayNode()

    if isinstance(descriptor, type) and descriptor in _COERCERS:
        return PrimitiveNode(type_=descriptor)

    if _is_model_type(descriptor):
        return descriptor.compiled_schema()

    if isinstance(descriptor, Special):
        return SpecialNode(hook=descriptor.hook)

    if isinstance(descriptor, Mapping):
        if "$validate" in descriptor:
            return SpecialNode(hook=descriptor["$validate"])
        if "$set" in descriptor:
            setter = descriptor["$set"]
            return SpecialNode(hook=lambda value, path: setter(value))
        return compile_schema(descriptor)

    raise SchemaDefinitionError(
        f"type of {key} is not supported, don't know how to implement a schema parser for it",
        field_name=key,
    )


def compile_schema(definition: Mapping, model_type: Optional[type] = None) -> EmbeddedNode:
    """Compile a schema definition into an EmbeddedNode.

    Args:
        definition: Mapping of field name to descriptor
        model_type: Model class owning the definition (not memoized here;
            model classes memoize their own node)

    Returns:
        Root node of the compiled tree

    Raises:
        SchemaDefinitionError: If a descriptor is not supported
    """
    if model_type is None:
        cached = _memo.get(id(definition))
        if cached is not None and cached[0] is definition:
            return cached[1]

    if not isinstance(definition, Mapping):
        raise SchemaDefinitionError("Schema definition must be a mapping")

    fields = {str(key): _build_node(str(key), descriptor) for key, descriptor in definition.items()}
    node = EmbeddedNode(fields=fields, model_type=model_type)

    if model_type is None:
        _memo[id(definition)] = (definition, node)
    return node
