"""
Temporary ids and id rewriting.

Entities created locally get a recognisable placeholder id until the remote
authority confirms them. Once the authoritative id is known, every place the
placeholder appears (queued payloads, request paths, relationship lists,
ordering arrays) is rewritten with the helpers below.
"""

from __future__ import annotations

import uuid
from typing import Any

TEMP_ID_PREFIX = "temp-"


def new_temp_id(prefix: str = TEMP_ID_PREFIX) -> str:
    """Generate a fresh temporary id."""
    return f"{prefix}{uuid.uuid4().hex}"


def is_temp_id(value: object, prefix: str = TEMP_ID_PREFIX) -> bool:
    """Check whether a value is a temporary id."""
    return isinstance(value, str) and value.startswith(prefix)


def replace_id_refs(value: Any, old: str, new: str) -> Any:
    """
    Replace exact occurrences of ``old`` inside a JSON-like value.

    Strings are compared whole (no substring replacement); lists and dicts
    are walked recursively. Dict keys are left untouched.
    """
    if isinstance(value, str):
        return new if value == old else value
    if isinstance(value, list):
        return [replace_id_refs(item, old, new) for item in value]
    if isinstance(value, dict):
        return {key: replace_id_refs(item, old, new) for key, item in value.items()}
    return value


def replace_path_id(path: str, old: str, new: str) -> str:
    """Replace a path segment equal to ``old`` (``/api/tasks/temp-1`` style)."""
    return "/".join(new if segment == old else segment for segment in path.split("/"))


def find_temp_ids(value: Any, prefix: str = TEMP_ID_PREFIX) -> set[str]:
    """Collect every temporary id referenced inside a JSON-like value."""
    found: set[str] = set()
    if isinstance(value, str):
        if value.startswith(prefix):
            found.add(value)
    elif isinstance(value, list):
        for item in value:
            found |= find_temp_ids(item, prefix)
    elif isinstance(value, dict):
        for item in value.values():
            found |= find_temp_ids(item, prefix)
    return found


def path_temp_ids(path: str, prefix: str = TEMP_ID_PREFIX) -> set[str]:
    """Collect temporary ids used as segments of a request path."""
    return {segment for segment in path.split("/") if segment.startswith(prefix)}
