"""Size- and age-bounded least-recently-used cache."""
from collections import OrderedDict
import time
from typing import Any, Callable, Dict, Hashable, Optional


class LRUCache:
    """
    Insertion-ordered LRU cache with optional entry expiry.

    Reads refresh recency. Expired entries are dropped lazily when looked
    up, or in bulk by cleanup(). When full, the least recently used entry
    is evicted.
    """

    def __init__(
        self,
        max_size: int = 100,
        max_age: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            max_size: Maximum number of entries
            max_age: Seconds an entry stays valid (None = forever)
            clock: Time source, injectable for tests
        """
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        self.max_size = max_size
        self.max_age = max_age
        self._clock = clock
        self._data: "OrderedDict[Hashable, tuple]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def _expired(self, stamp: float) -> bool:
        return self.max_age is not None and self._clock() - stamp > self.max_age

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._data.get(key)
        if entry is None:
            self.misses += 1
            return default
        value, stamp = entry
        if self._expired(stamp):
            del self._data[key]
            self.misses += 1
            return default
        self._data.move_to_end(key)
        self.hits += 1
        return value

    def set(self, key: Hashable, value: Any) -> None:
        if key in self._data:
            del self._data[key]
        elif len(self._data) >= self.max_size:
            self._data.popitem(last=False)
        self._data[key] = (value, self._clock())

    def __contains__(self, key: Hashable) -> bool:
        entry = self._data.get(key)
        return entry is not None and not self._expired(entry[1])

    def __len__(self) -> int:
        return len(self._data)

    def delete(self, key: Hashable) -> bool:
        return self._data.pop(key, None) is not None

    def clear(self) -> None:
        self._data.clear()

    def cleanup(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        stale = [k for k, (_, stamp) in self._data.items() if self._expired(stamp)]
        for key in stale:
            del self._data[key]
        return len(stale)

    def stats(self) -> Dict[str, Any]:
        return {
            'size': len(self._data),
            'max_size': self.max_size,
            'hits': self.hits,
            'misses': self.misses,
        }
