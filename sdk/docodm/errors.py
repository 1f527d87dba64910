"""
Error types for DocODM.

This module defines all exception types raised by the ODM:
- OdmError: Base exception
- ValidationError: Document failed schema validation
- TypeMismatchError: A field value could not be coerced to its declared type
- RequiredFieldMissingError: A required field is absent
- InvalidIdentifierError: Malformed document identifier
- NotFoundError: Lookup miss, only when the caller asked for it
- BadQueryError: Malformed matcher expression
- StaleInstanceError: Operation on an instance that was removed

Invariants:
    - All errors inherit from OdmError
    - Validation and query-shape errors are raised before any storage call
    - Storage driver exceptions are never wrapped in these types
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class OdmError(Exception):
    """Base exception for all DocODM errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "ODM_ERROR"
        self.details = details or {}


class ConnectionError(OdmError):
    """No usable connection to the storage driver.

    Raised when:
    - No driver or URL has been configured
    - The driver failed to connect
    """

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="CONNECTION_ERROR",
            details={"url": url},
        )
        self.url = url


class ValidationError(OdmError):
    """Document validation failed.

    Raised when:
    - A field value has the wrong type
    - A required field is missing
    - A JSON-schema check reports errors
    """

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        errors: Optional[List[str]] = None,
        code: str = "VALIDATION_ERROR",
    ) -> None:
        super().__init__(
            message,
            code=code,
            details={"path": path, "errors": errors or []},
        )
        self.path = path
        self.errors = errors or []


class TypeMismatchError(ValidationError):
    """A value does not match (and cannot be coerced to) the declared type."""

    def __init__(self, path: str, expected: str, value: Any = None) -> None:
        super().__init__(
            f"{path} must have type: {expected}",
            path=path,
            code="TYPE_MISMATCH",
        )
        self.expected = expected
        self.value = value


class RequiredFieldMissingError(ValidationError):
    """A required field is absent from the document."""

    def __init__(self, path: str) -> None:
        super().__init__(
            f"{path} is required",
            path=path,
            code="REQUIRED_FIELD_MISSING",
        )


class SchemaDefinitionError(OdmError):
    """The declarative schema itself is malformed.

    Raised at compile time, never while validating data.
    """

    def __init__(self, message: str, field_name: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="SCHEMA_DEFINITION_ERROR",
            details={"field": field_name},
        )
        self.field_name = field_name


class InvalidIdentifierError(OdmError):
    """An identifier is neither an ObjectId nor its 24-hex string form."""

    def __init__(self, value: Any = None, message: str = "invalid object id") -> None:
        super().__init__(
            message,
            code="INVALID_IDENTIFIER",
            details={"value": repr(value)},
        )
        self.value = value


class NotFoundError(OdmError):
    """Document not found.

    Only raised when the caller opts in (``include_not_found=False`` for
    ``find_by_id``, ``unique=True`` for generated ``find_by_<field>``
    finders, or ``reload``). Otherwise a miss is a plain ``None``.
    """

    def __init__(self, collection: str, key: Any) -> None:
        super().__init__(
            f"{collection} {key} not found",
            code="NOT_FOUND",
            details={"collection": collection, "key": str(key)},
        )
        self.collection = collection
        self.key = key


class BadQueryError(OdmError):
    """Malformed query or update expression."""

    def __init__(self, message: str = "Bad query") -> None:
        super().__init__(message, code="BAD_QUERY")


class StaleInstanceError(OdmError):
    """The instance was removed from storage and can only be re-inserted."""

    def __init__(self, collection: str, document_id: Any) -> None:
        super().__init__(
            f"{collection} {document_id} was removed",
            code="STALE_INSTANCE",
            details={"collection": collection, "id": str(document_id)},
        )
        self.collection = collection
        self.document_id = document_id


class EmbeddedModelError(OdmError):
    """A collection operation was attempted on an embedded model."""

    def __init__(self, operation: str, type_name: str) -> None:
        super().__init__(
            f"Cannot {operation} on embedded model '{type_name}'",
            code="EMBEDDED_MODEL",
            details={"operation": operation, "type_name": type_name},
        )
        self.operation = operation
        self.type_name = type_name
