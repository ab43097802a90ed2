"""
Query Cache - async key/value store the mutation engine writes through.
"""

import copy
from typing import Any, Dict, Hashable, Iterable, List, Optional, Protocol, Tuple, Union

CacheKey = Tuple[Hashable, ...]
CacheKeyLike = Union[str, CacheKey, List[Hashable]]


def normalize_key(key: CacheKeyLike) -> CacheKey:
    if isinstance(key, str):
        return (key,)
    return tuple(key)


def query_keys_for_entity(entity_type: str, entity_id: str) -> List[CacheKey]:
    """Query keys that usually hold records of an entity type."""
    collection = entity_type if entity_type.endswith("s") else f"{entity_type}s"
    return [
        (collection,),
        (collection, "list"),
        (collection, entity_id),
        (collection, entity_id, "details"),
    ]


class CacheStore(Protocol):
    async def read(self, key: CacheKey) -> Optional[Any]:
        ...

    async def write(self, key: CacheKey, value: Any) -> None:
        ...


class InMemoryCacheStore:
    """Dict-backed cache. Values are copied on the way in and out."""

    def __init__(self, initial: Optional[Dict[CacheKeyLike, Any]] = None):
        self._data: Dict[CacheKey, Any] = {}
        for key, value in (initial or {}).items():
            self._data[normalize_key(key)] = copy.deepcopy(value)

    async def read(self, key: CacheKey) -> Optional[Any]:
        return copy.deepcopy(self._data.get(normalize_key(key)))

    async def write(self, key: CacheKey, value: Any) -> None:
        self._data[normalize_key(key)] = copy.deepcopy(value)

    def invalidate(self, key: CacheKeyLike) -> None:
        self._data.pop(normalize_key(key), None)

    def keys(self) -> Iterable[CacheKey]:
        return list(self._data)

    def peek(self, key: CacheKeyLike) -> Optional[Any]:
        return copy.deepcopy(self._data.get(normalize_key(key)))
