"""
Option bag helpers.

Operations accept a plain ``dict`` of options. The ODM consumes the keys it
understands (``direct_object``, ``pluck``, ``include_not_found``, ...) and
forwards the rest to the storage driver untouched.

Invariants:
    - The caller's dict is never mutated; ``split_options`` copies first
    - Missing keys fall back to the supplied default
"""

from __future__ import annotations

from typing import Any, Dict, Optional

_MISSING = object()


def split_options(options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return a private copy of an option bag that is safe to extract from."""
    return dict(options) if options else {}


def extract_option(name: str, options: Optional[Dict[str, Any]], default: Any = None) -> Any:
    """Remove ``name`` from ``options`` and return its value.

    Args:
        name: Option key
        options: Option bag (modified in place)
        default: Value returned when the key is absent

    Returns:
        The option value or ``default``
    """
    if not options:
        return default
    value = options.pop(name, _MISSING)
    return default if value is _MISSING else value


def get_option(name: str, options: Optional[Dict[str, Any]], default: Any = None) -> Any:
    """Read ``name`` from ``options`` without removing it."""
    if not options:
        return default
    return options.get(name, default)
