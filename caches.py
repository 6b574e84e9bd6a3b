"""
Process-lifetime lookup caches.

Every cache here is unbounded and never evicts: keys are bounded by user
interaction volume (places searched, records opened), not by streams.
Caches are plain objects injected into the components that use them so
tests can build isolated instances.  Access is serialised with a lock
because the HTTP host serves requests from several threads.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyedCache(Generic[T]):
    """Thread-safe dict with hit/miss counters."""

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._data: Dict[str, T] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            if key in self._data:
                self.hits += 1
                logger.debug("cache hit %s[%s]", self.name, key)
                return self._data[key]
            self.misses += 1
            return None

    def set(self, key: str, value: T) -> None:
        with self._lock:
            self._data[key] = value

    def get_or_compute(self, key: str, compute: Callable[[], T]) -> T:
        """Return the cached value or compute, store and return it.

        *compute* runs outside the lock; two racing callers may both
        compute, the last write wins.  Exceptions are not cached.
        """
        cached = self.get(key)
        if cached is not None:
            return cached
        value = compute()
        self.set(key, value)
        return value

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self.hits = 0
            self.misses = 0

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {"name": self.name, "size": len(self._data), "hits": self.hits, "misses": self.misses}


@dataclass
class ZonalCaches:
    """All caches for one process (or one test)."""
    datasets: KeyedCache = field(default_factory=lambda: KeyedCache("datasets"))
    reports: KeyedCache = field(default_factory=lambda: KeyedCache("reports"))
    anchors: KeyedCache = field(default_factory=lambda: KeyedCache("anchors"))
    record_points: KeyedCache = field(default_factory=lambda: KeyedCache("record_points"))
    road_geometries: KeyedCache = field(default_factory=lambda: KeyedCache("road_geometries"))

    def stats(self) -> Dict[str, Dict[str, Any]]:
        return {
            c.name: c.stats()
            for c in (self.datasets, self.reports, self.anchors, self.record_points, self.road_geometries)
        }
