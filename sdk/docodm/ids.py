"""
Document identifier helpers.

Identity values are ``bson.ObjectId``. Callers may hand in either an
ObjectId or its canonical 24-hex-character string.
"""

from __future__ import annotations

import re
from typing import Any

from bson import ObjectId

from .errors import InvalidIdentifierError

OBJECT_ID_RE = re.compile(r"^[0-9a-fA-F]{24}$")


def is_object_id_string(value: Any) -> bool:
    """Whether ``value`` is a 24-hex-character string."""
    return isinstance(value, str) and OBJECT_ID_RE.match(value) is not None


def to_object_id(value: Any) -> ObjectId:
    """Normalize ``value`` to an ObjectId.

    Raises:
        InvalidIdentifierError: If ``value`` is neither an ObjectId nor a
            24-hex string
    """
    if isinstance(value, ObjectId):
        return value
    if is_object_id_string(value):
        return ObjectId(value)
    raise InvalidIdentifierError(value)
