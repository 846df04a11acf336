"""
Keyed storage and per-key locking.

In-memory maps for process-lifetime state, behind a small store interface
so a persistent backend can be swapped in without touching the tracking
logic.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Callable, Dict, Generic, Iterable, Iterator, List, Optional, TypeVar
import threading

V = TypeVar("V")


class KeyValueStore(ABC, Generic[V]):
    """Minimal keyed store used by the tracker and the attribution engine."""

    @abstractmethod
    def get(self, key: str) -> Optional[V]:
        ...

    @abstractmethod
    def put(self, key: str, value: V) -> None:
        ...

    @abstractmethod
    def remove(self, key: str) -> Optional[V]:
        ...

    @abstractmethod
    def scan(self, predicate: Optional[Callable[[V], bool]] = None) -> List[V]:
        """Return a snapshot list of values, optionally filtered."""

    @abstractmethod
    def keys(self) -> List[str]:
        ...

    @abstractmethod
    def __len__(self) -> int:
        ...

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def setdefault(self, key: str, factory: Callable[[], V]) -> V:
        """Return the value for key, storing factory() first when absent."""
        existing = self.get(key)
        if existing is not None:
            return existing
        value = factory()
        self.put(key, value)
        return value


class InMemoryStore(KeyValueStore[V]):
    """Dict-backed store. Individual operations are atomic."""

    def __init__(self, name: str = "store"):
        self.name = name
        self._data: Dict[str, V] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[V]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: V) -> None:
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> Optional[V]:
        with self._lock:
            return self._data.pop(key, None)

    def scan(self, predicate: Optional[Callable[[V], bool]] = None) -> List[V]:
        with self._lock:
            values = list(self._data.values())
        if predicate is None:
            return values
        return [v for v in values if predicate(v)]

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data.keys())

    def setdefault(self, key: str, factory: Callable[[], V]) -> V:
        with self._lock:
            if key not in self._data:
                self._data[key] = factory()
            return self._data[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class KeyedLock:
    """
    Hands out one re-entrant lock per key.

    Usage:
        with locks.hold(session_id):
            ...mutate that session...
    """

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._lock_for(key)
        with lock:
            yield

    def prune(self, keys: Iterable[str]) -> int:
        """Drop locks for removed keys, skipping any that are currently held."""
        pruned = 0
        with self._guard:
            for key in keys:
                lock = self._locks.get(key)
                if lock is None:
                    continue
                if lock.acquire(blocking=False):
                    try:
                        del self._locks[key]
                        pruned += 1
                    finally:
                        lock.release()
        return pruned

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
