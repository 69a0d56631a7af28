"""Snapshot migrations for Cubby backups and persisted storage.

Forward-only, idempotent migration steps. Each step receives and returns the
entire snapshot dict. Steps must tolerate being applied more than once
without changing the outcome.

Version history:
    1: locations, items (no book fields, no move destination), tags (no
       color), review history.
    2: items gain ``moveDestination``, ``isBook``, ``bookTitle``,
       ``bookAuthor``; tags gain ``color``; the ``Fix`` plan exists.
"""

from __future__ import annotations

from copy import deepcopy
from typing import Any

from .const import DEFAULT_TAG_COLOR


def migrate(payload: dict[str, Any], *, from_version: int, to_version: int) -> dict[str, Any]:
    """Migrate ``payload`` from ``from_version`` to ``to_version``.

    Steps are applied sequentially: vN -> vN+1 -> ... -> vM.
    """

    if from_version > to_version:
        # We do not support downgrades; return the original as-is
        return payload

    data: dict[str, Any] = deepcopy(payload) if isinstance(payload, dict) else {}
    version = int(from_version)
    while version < to_version:
        next_version = version + 1
        step_name = f"migrate_{version}_to_{next_version}"
        step = globals().get(step_name)
        if callable(step):
            data = step(data)  # type: ignore[misc]
        # If no step is defined, assume no-op for this transition
        version = next_version

    data["version"] = to_version
    return data


def migrate_0_to_1(payload: dict[str, Any]) -> dict[str, Any]:
    """Ensure the top-level collections exist."""

    data = deepcopy(payload) if isinstance(payload, dict) else {}
    for key in ("locations", "items", "tags", "reviewHistory"):
        if not isinstance(data.get(key), list):
            data[key] = []
    return data


def _rows(data: dict[str, Any], key: str) -> list[Any]:
    rows = data.get(key)
    return rows if isinstance(rows, list) else []


def migrate_1_to_2(payload: dict[str, Any]) -> dict[str, Any]:
    """Add book fields and move destination to items, color to tags.

    Collections that are missing or not lists are left as they are so that
    validation after migration still sees them.
    """

    data = deepcopy(payload) if isinstance(payload, dict) else {}
    for item in _rows(data, "items"):
        if not isinstance(item, dict):
            continue
        item.setdefault("moveDestination", None)
        item.setdefault("isBook", False)
        item.setdefault("bookTitle", None)
        item.setdefault("bookAuthor", None)
    for tag in _rows(data, "tags"):
        if not isinstance(tag, dict):
            continue
        tag.setdefault("color", DEFAULT_TAG_COLOR)
    return data
