"""Additive merge helpers shared by preprocessors.

All helpers are idempotent: re-applying them to their own output is a no-op.
They only fill in missing keys. A user value of the wrong type raises
``TypeError`` so the pipeline records the step as failed and rolls it back.
"""

from __future__ import annotations

from typing import Any


def ensure_section(config: dict[str, Any], *path: str) -> dict[str, Any]:
    """Return the nested dict at *path*, creating missing dicts along the way."""
    node = config
    trail: list[str] = []
    for key in path:
        trail.append(key)
        child = node.get(key)
        if child is None:
            child = {}
            node[key] = child
        elif not isinstance(child, dict):
            raise TypeError(f"{'.'.join(trail)} must be a mapping, got {type(child).__name__}")
        node = child
    return node


def append_unique(section: dict[str, Any], key: str, value: str) -> bool:
    """Append *value* to the list at ``section[key]`` unless already present.

    Returns True when the list changed.
    """
    items = section.get(key)
    if items is None:
        items = []
        section[key] = items
    elif not isinstance(items, list):
        raise TypeError(f"{key} must be a list, got {type(items).__name__}")
    if value in items:
        return False
    items.append(value)
    return True


def grant_permission(
    section: dict[str, Any],
    value: str,
    primary_key: str = "allow",
    additive_key: str = "also_allow",
) -> str | None:
    """Grant *value* without replacing the user's allow-list.

    When the user already supplied a non-empty primary list, *value* is
    merged into it. Otherwise it goes into the separate additive list, so
    an absent primary list keeps its "everything" meaning. Returns the key
    that was modified, or None if *value* was already granted.
    """
    primary = section.get(primary_key)
    if isinstance(primary, list) and primary:
        return primary_key if append_unique(section, primary_key, value) else None
    if value in (section.get(additive_key) or []):
        return None
    append_unique(section, additive_key, value)
    return additive_key
