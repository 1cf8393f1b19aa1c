"""Dotted-path lookups into loosely typed JSON payloads."""

from __future__ import annotations

from typing import Any


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def resolve_path(data: Any, path: str) -> Any:
    """Return the value at ``path`` (e.g. ``message.buttons.0.id``) or ``MISSING``.

    Integer segments index into lists; every other segment is a mapping key.
    """

    current = data
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, list):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                return MISSING
        else:
            return MISSING
    return current


def as_text(value: Any) -> str | None:
    if value is MISSING or value is None:
        return None
    if isinstance(value, (dict, list)):
        return None
    return str(value)
