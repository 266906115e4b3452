"""Structural diff of discovery documents.

Documents are compared as plain JSON values. Object keys are visited in
sorted order and array elements in traversal order, so the same pair of
inputs always yields the same list of entries.

Arrays of objects are matched by an identity key (``id``, ``name`` or
``key``) when every element carries one with unique scalar values. Any
other array is compared by index, which means a pure reordering shows up
as a run of modified/added/removed entries.
"""
from __future__ import annotations

from typing import Any

from discotrack.models.db import ChangeKind, ChangeTag
from discotrack.models.schemas import ChangeEntry, PathSegment, is_revision_only

IDENTITY_KEYS = ("id", "name", "key")

__all__ = ["diff", "classify_change", "is_revision_only", "identity_key_for"]


def classify_change(path: tuple[PathSegment, ...], kind: ChangeKind) -> ChangeTag:
    """Tag a change from the shape of its path and its kind alone."""
    n = len(path)

    if n >= 4 and path[-4] == "resources" and path[-2] == "methods" and isinstance(path[-1], str):
        if kind == ChangeKind.ADDED:
            return ChangeTag.NEW_METHOD
        if kind == ChangeKind.REMOVED:
            return ChangeTag.REMOVED_METHOD

    for i in range(2, n - 2):
        if (
            path[i] == "methods"
            and path[i - 2] == "resources"
            and path[i + 2] == "parameters"
        ):
            return ChangeTag.PARAMETER_CHANGE

    return ChangeTag.OTHER


def diff(old: Any, new: Any) -> list[ChangeEntry]:
    """Return the ordered list of differences between two documents."""
    entries: list[ChangeEntry] = []
    _compare(old, new, (), entries)
    return entries


def identity_key_for(old: list, new: list) -> str | None:
    """Pick the identity key shared by every element of both arrays, if any."""
    if not old and not new:
        return None
    if not all(isinstance(item, dict) for item in old) or not all(isinstance(item, dict) for item in new):
        return None

    for key in IDENTITY_KEYS:
        if _unique_identities(old, key) and _unique_identities(new, key):
            return key
    return None


def _unique_identities(items: list[dict], key: str) -> bool:
    seen = set()
    for item in items:
        value = item.get(key)
        if value is None or isinstance(value, (dict, list, bool)):
            return False
        marker = (type(value).__name__, value)
        if marker in seen:
            return False
        seen.add(marker)
    return True


def _entry(path, kind, old_value=None, new_value=None) -> ChangeEntry:
    return ChangeEntry(
        path=path,
        kind=kind,
        tag=classify_change(path, kind),
        old_value=old_value,
        new_value=new_value,
    )


def _json_kind(value: Any) -> str:
    if isinstance(value, dict):
        return "object"
    if isinstance(value, list):
        return "array"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if value is None:
        return "null"
    return "string"


def _scalar_equal(a: Any, b: Any) -> bool:
    return _json_kind(a) == _json_kind(b) and a == b


def _compare(old: Any, new: Any, path: tuple[PathSegment, ...], out: list[ChangeEntry]) -> None:
    if isinstance(old, dict) and isinstance(new, dict):
        _compare_objects(old, new, path, out)
    elif isinstance(old, list) and isinstance(new, list):
        _compare_arrays(old, new, path, out)
    elif isinstance(old, (dict, list)) or isinstance(new, (dict, list)):
        # Container replaced by something of another shape
        out.append(_entry(path, ChangeKind.MODIFIED, old, new))
    elif not _scalar_equal(old, new):
        out.append(_entry(path, ChangeKind.MODIFIED, old, new))


def _compare_objects(old: dict, new: dict, path: tuple[PathSegment, ...], out: list[ChangeEntry]) -> None:
    for key in sorted(old.keys() | new.keys()):
        child = path + (key,)
        if key not in new:
            out.append(_entry(child, ChangeKind.REMOVED, old_value=old[key]))
        elif key not in old:
            out.append(_entry(child, ChangeKind.ADDED, new_value=new[key]))
        else:
            _compare(old[key], new[key], child, out)


def _compare_arrays(old: list, new: list, path: tuple[PathSegment, ...], out: list[ChangeEntry]) -> None:
    key = identity_key_for(old, new)
    if key is None:
        _compare_positional(old, new, path, out)
        return

    old_by_id = {(type(item[key]).__name__, item[key]): item for item in old}
    new_ids = set()
    for index, item in enumerate(new):
        marker = (type(item[key]).__name__, item[key])
        new_ids.add(marker)
        if marker in old_by_id:
            _compare(old_by_id[marker], item, path + (index,), out)
        else:
            out.append(_entry(path + (index,), ChangeKind.ADDED, new_value=item))

    for index, item in enumerate(old):
        if (type(item[key]).__name__, item[key]) not in new_ids:
            out.append(_entry(path + (index,), ChangeKind.REMOVED, old_value=item))


def _compare_positional(old: list, new: list, path: tuple[PathSegment, ...], out: list[ChangeEntry]) -> None:
    common = min(len(old), len(new))
    for index in range(common):
        _compare(old[index], new[index], path + (index,), out)
    for index in range(common, len(new)):
        out.append(_entry(path + (index,), ChangeKind.ADDED, new_value=new[index]))
    for index in range(common, len(old)):
        out.append(_entry(path + (index,), ChangeKind.REMOVED, old_value=old[index]))
