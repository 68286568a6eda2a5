"""
playchain/store.py - Repository interface and the in-memory backend.

Services never hold raw dicts. Each one asks a Store for a named Repository
and does get/put/list/delete by key through it, so the same business logic
runs against MemoryStore (tests, single-process default) or SqliteStore
(api/db.py).

list() returns values in first-insertion order. Re-putting an existing key
keeps its position; the registry relies on this for stable ordering of
tournaments that share a start time.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Generic, Protocol, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Codec(Generic[T]):
    """How a persistent backend turns a value into JSON-able data and back."""

    encode: Callable[[T], Any]
    decode: Callable[[Any], T]


def list_codec(item: Codec[T]) -> Codec[list[T]]:
    """Codec for a list of values that each have their own codec."""
    return Codec(
        encode=lambda values: [item.encode(v) for v in values],
        decode=lambda data: [item.decode(v) for v in data],
    )


IDENTITY: Codec[Any] = Codec(encode=lambda v: v, decode=lambda v: v)


class Repository(Protocol[T]):
    """Key/value access to one collection of records."""

    def get(self, key: str) -> T | None: ...

    def put(self, key: str, value: T) -> None: ...

    def delete(self, key: str) -> bool: ...

    def list(self) -> list[T]: ...

    def keys(self) -> list[str]: ...


class Store(Protocol):
    def repository(self, name: str, codec: Codec[T] = IDENTITY) -> Repository[T]: ...


# ============================================================================
# In-memory backend
# ============================================================================


class MemoryRepository(Generic[T]):
    """Dict-backed repository. Thread-safe for single operations."""

    def __init__(self):
        self._items: dict[str, T] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> T | None:
        with self._lock:
            return self._items.get(key)

    def put(self, key: str, value: T) -> None:
        with self._lock:
            self._items[key] = value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def list(self) -> list[T]:
        with self._lock:
            return list(self._items.values())

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._items.keys())


class MemoryStore:
    """Holds one MemoryRepository per collection name. Codecs are ignored."""

    def __init__(self):
        self._repos: dict[str, MemoryRepository] = {}
        self._lock = threading.Lock()

    def repository(self, name: str, codec: Codec[T] = IDENTITY) -> MemoryRepository[T]:
        with self._lock:
            if name not in self._repos:
                self._repos[name] = MemoryRepository()
            return self._repos[name]
