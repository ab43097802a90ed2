"""
Cache Transforms - pure functions over cached query results.

Each forward transform returns the new value plus an undo record; the
matching reverse transform takes the (possibly later) value and the undo
record and restores what the forward step changed. Inputs are never
mutated.

Supported shapes:
- a list of records: [{"id": ...}, ...]
- a paginated envelope: {"data": [...], "totalCount": N, ...}
- an object with list-valued fields: {"students": [...], "teachers": [...]}
- a single record: {"id": ..., ...} (update only)
"""

import copy
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

COUNTER_KEYS = ("totalCount", "total", "count")

# Path of a list inside the cached value: () for a top-level list, ("data",) for a field
Path = Tuple[str, ...]


class MutationAction(str, Enum):
    DELETE = "delete"
    UPDATE = "update"
    NULLIFY = "nullify"


# ==========================================================================
# Undo Records
# ==========================================================================

@dataclass(frozen=True)
class RemovedRecord:
    path: Path
    index: int
    record: Any


@dataclass(frozen=True)
class DeleteUndo:
    removed: Tuple[RemovedRecord, ...]
    counters: Tuple[Tuple[str, Any], ...] = ()


@dataclass(frozen=True)
class FieldChange:
    """Prior field values of one record; path None means the value itself is the record."""
    path: Optional[Path]
    entity_id: str
    previous: Tuple[Tuple[str, bool, Any], ...]


@dataclass(frozen=True)
class UpdateUndo:
    changes: Tuple[FieldChange, ...]


@dataclass(frozen=True)
class NullifyUndo:
    original: Any


UndoRecord = Union[DeleteUndo, UpdateUndo, NullifyUndo]


def _matches(item: Any, entity_id: str) -> bool:
    return isinstance(item, Mapping) and item.get("id") == entity_id


def _list_paths(data: Any) -> List[Path]:
    if isinstance(data, list):
        return [()]
    if isinstance(data, Mapping):
        return [(key,) for key, value in data.items() if isinstance(value, list)]
    return []


def _get(data: Any, path: Path) -> Any:
    return data[path[0]] if path else data


def _set(data: Any, path: Path, value: Any) -> Any:
    if not path:
        return value
    new = dict(data)
    new[path[0]] = value
    return new


# ==========================================================================
# Delete
# ==========================================================================

def delete_entity(data: Any, entity_id: str) -> Tuple[Any, DeleteUndo]:
    """Remove every record with `entity_id` and decrement total counters."""
    removed: List[RemovedRecord] = []
    result = data

    for path in _list_paths(data):
        items = _get(data, path)
        kept = []
        for index, item in enumerate(items):
            if _matches(item, entity_id):
                removed.append(RemovedRecord(path, index, copy.deepcopy(item)))
            else:
                kept.append(item)
        if len(kept) != len(items):
            result = _set(result, path, kept)

    counters: List[Tuple[str, Any]] = []
    if removed and isinstance(result, Mapping):
        result = dict(result)
        for key in COUNTER_KEYS:
            value = result.get(key)
            if isinstance(value, int) and not isinstance(value, bool):
                counters.append((key, value))
                result[key] = max(0, value - len(removed))

    return result, DeleteUndo(tuple(removed), tuple(counters))


def restore_deleted(data: Any, undo: DeleteUndo) -> Any:
    result = data
    by_path: Dict[Path, List[RemovedRecord]] = {}
    for entry in undo.removed:
        by_path.setdefault(entry.path, []).append(entry)

    for path, entries in by_path.items():
        items = list(_get(result, path) or [])
        for entry in sorted(entries, key=lambda e: e.index):
            items.insert(min(entry.index, len(items)), copy.deepcopy(entry.record))
        result = _set(result, path, items)

    if undo.counters:
        result = dict(result)
        for key, value in undo.counters:
            result[key] = value
    return result


# ==========================================================================
# Update
# ==========================================================================

def _merge(record: Mapping[str, Any], fields: Mapping[str, Any]) -> Tuple[Dict[str, Any], Tuple[Tuple[str, bool, Any], ...]]:
    previous = tuple((key, key in record, copy.deepcopy(record.get(key))) for key in fields)
    merged = dict(record)
    merged.update(copy.deepcopy(dict(fields)))
    return merged, previous


def update_entity(data: Any, entity_id: str, fields: Mapping[str, Any]) -> Tuple[Any, UpdateUndo]:
    """Shallow-merge `fields` into every record with `entity_id`."""
    fields = fields or {}
    changes: List[FieldChange] = []

    if _matches(data, entity_id):
        merged, previous = _merge(data, fields)
        return merged, UpdateUndo((FieldChange(None, entity_id, previous),))

    result = data
    for path in _list_paths(data):
        items = _get(data, path)
        new_items = list(items)
        touched = False
        for index, item in enumerate(items):
            if _matches(item, entity_id):
                new_items[index], previous = _merge(item, fields)
                changes.append(FieldChange(path, entity_id, previous))
                touched = True
        if touched:
            result = _set(result, path, new_items)

    return result, UpdateUndo(tuple(changes))


def _unmerge(record: Mapping[str, Any], previous: Tuple[Tuple[str, bool, Any], ...]) -> Dict[str, Any]:
    restored = dict(record)
    for key, existed, value in previous:
        if existed:
            restored[key] = copy.deepcopy(value)
        else:
            restored.pop(key, None)
    return restored


def restore_updated(data: Any, undo: UpdateUndo) -> Any:
    """
    Put back prior field values, locating records by id.

    Other operations may have reordered or shrunk the list since the update;
    the n-th change recorded for a list goes to the n-th record with that id
    still present. Records that are gone are skipped.
    """
    result = data
    by_path: Dict[Path, List[FieldChange]] = {}
    for change in undo.changes:
        if change.path is None:
            if _matches(result, change.entity_id):
                result = _unmerge(result, change.previous)
            continue
        by_path.setdefault(change.path, []).append(change)

    for path, changes in by_path.items():
        if path and not (isinstance(result, Mapping) and path[0] in result):
            continue
        items = _get(result, path)
        if not isinstance(items, list):
            continue
        pending = list(changes)
        new_items = []
        for item in items:
            change = next((c for c in pending if _matches(item, c.entity_id)), None)
            if change is not None:
                pending.remove(change)
                item = _unmerge(item, change.previous)
            new_items.append(item)
        result = _set(result, path, new_items)
    return result


# ==========================================================================
# Nullify
# ==========================================================================

def _is_reference_key(key: Any) -> bool:
    return isinstance(key, str) and (key.endswith("Id") or (key.endswith("_id") and key != "_id"))


def _nullify(value: Any, entity_id: str) -> Any:
    if isinstance(value, list):
        return [_nullify(item, entity_id) for item in value]
    if isinstance(value, Mapping):
        result = {}
        for key, item in value.items():
            if _is_reference_key(key) and item == entity_id:
                result[key] = None
            else:
                result[key] = _nullify(item, entity_id)
        return result
    return value


def nullify_references(data: Any, entity_id: str) -> Tuple[Any, NullifyUndo]:
    """Recursively null foreign-key fields (`...Id` / `..._id`) that point at `entity_id`."""
    return _nullify(data, entity_id), NullifyUndo(copy.deepcopy(data))


def restore_nullified(data: Any, undo: NullifyUndo) -> Any:
    return copy.deepcopy(undo.original)


# ==========================================================================
# Dispatch
# ==========================================================================

def apply_action(
    action: MutationAction,
    data: Any,
    entity_id: str,
    speculative_value: Optional[Mapping[str, Any]] = None,
) -> Tuple[Any, UndoRecord]:
    if action == MutationAction.DELETE:
        return delete_entity(data, entity_id)
    if action == MutationAction.UPDATE:
        return update_entity(data, entity_id, speculative_value or {})
    return nullify_references(data, entity_id)


def revert_action(data: Any, undo: UndoRecord) -> Any:
    if isinstance(undo, DeleteUndo):
        return restore_deleted(data, undo)
    if isinstance(undo, UpdateUndo):
        return restore_updated(data, undo)
    return restore_nullified(data, undo)
