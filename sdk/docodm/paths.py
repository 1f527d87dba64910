"""
Dotted-path access into nested documents.

``"author.address.city"`` walks nested dicts; numeric segments index into
lists (``"chapters.0.title"``).
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, List

_MISSING = object()


def _split(path: str) -> List[str]:
    return path.split(".")


def _step(current: Any, part: str) -> Any:
    if isinstance(current, Mapping):
        return current.get(part, _MISSING)
    if isinstance(current, list) and part.isdigit():
        index = int(part)
        return current[index] if index < len(current) else _MISSING
    return _MISSING


def has_path(doc: Any, path: str) -> bool:
    """Whether ``path`` resolves to a value (``None`` included)."""
    current = doc
    for part in _split(path):
        current = _step(current, part)
        if current is _MISSING:
            return False
    return True


def deep_get(doc: Any, path: str, default: Any = None) -> Any:
    """Value at ``path`` or ``default``."""
    current = doc
    for part in _split(path):
        current = _step(current, part)
        if current is _MISSING:
            return default
    return current


def deep_set(doc: dict, path: str, value: Any) -> None:
    """Set ``path`` to ``value``, creating intermediate dicts."""
    parts = _split(path)
    current: Any = doc
    for part in parts[:-1]:
        if isinstance(current, list) and part.isdigit():
            current = current[int(part)]
            continue
        if part not in current or not isinstance(current[part], (dict, list)):
            current[part] = {}
        current = current[part]
    last = parts[-1]
    if isinstance(current, list) and last.isdigit():
        current[int(last)] = value
    else:
        current[last] = value


def deep_unset(doc: dict, path: str) -> None:
    """Remove ``path`` if it exists."""
    parts = _split(path)
    current: Any = doc
    for part in parts[:-1]:
        current = _step(current, part)
        if current is _MISSING:
            return
    if isinstance(current, dict):
        current.pop(parts[-1], None)
