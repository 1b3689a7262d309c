"""In-memory LRU cache bounded by total byte size, item count and TTL."""

from collections import OrderedDict
from typing import Callable, Dict, Generic, Optional, TypeVar
import hashlib
import time

V = TypeVar("V")


class CacheEntry(Generic[V]):
    """A single cache entry with expiration and a byte size."""

    def __init__(self, value: V, size: int, expires_at: float):
        self.value = value
        self.size = size
        self.expires_at = expires_at

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class MemoryLRUCache(Generic[V]):
    """LRU cache evicting by byte budget, item count or per-entry TTL.

    Whichever bound triggers first wins. The tracked size never exceeds
    ``max_bytes``: a value larger than the whole budget is not stored.
    """

    def __init__(
        self,
        max_bytes: int,
        max_items: int,
        ttl_seconds: float,
        size_of: Callable[[V], int] = len,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_bytes = max_bytes
        self.max_items = max_items
        self.ttl_seconds = ttl_seconds
        self._size_of = size_of
        self._clock = clock
        self._cache: "OrderedDict[str, CacheEntry[V]]" = OrderedDict()
        self._total_bytes = 0

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: str) -> bool:
        entry = self._cache.get(key)
        return entry is not None and not entry.is_expired(self._clock())

    def get(self, key: str) -> Optional[V]:
        """Get a value and mark it most recently used."""
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            self._remove(key)
            return None
        self._cache.move_to_end(key)
        return entry.value

    def set(self, key: str, value: V) -> bool:
        """Store a value; returns False when it cannot fit at all."""
        size = self._size_of(value)
        if key in self._cache:
            self._remove(key)
        if size > self.max_bytes:
            return False

        self._cache[key] = CacheEntry(value, size, self._clock() + self.ttl_seconds)
        self._total_bytes += size
        self._evict()
        return True

    def delete(self, key: str) -> None:
        if key in self._cache:
            self._remove(key)

    def clear(self) -> None:
        self._cache.clear()
        self._total_bytes = 0

    def keys(self):
        """Keys from least to most recently used."""
        return list(self._cache.keys())

    def stats(self) -> Dict[str, int]:
        return {
            "memorySize": self._total_bytes,
            "memoryItems": len(self._cache),
            "memoryMaxSize": self.max_bytes,
            "memoryMaxItems": self.max_items,
        }

    def _remove(self, key: str) -> None:
        entry = self._cache.pop(key)
        self._total_bytes -= entry.size

    def _evict(self) -> None:
        now = self._clock()
        for key in [k for k, e in self._cache.items() if e.is_expired(now)]:
            self._remove(key)
        while self._cache and (
            self._total_bytes > self.max_bytes or len(self._cache) > self.max_items
        ):
            oldest = next(iter(self._cache))
            self._remove(oldest)

    @staticmethod
    def make_key(*args) -> str:
        """Create a cache key from arguments."""
        key_str = ":".join(str(a) for a in args)
        return hashlib.md5(key_str.encode()).hexdigest()
