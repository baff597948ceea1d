"""Process-local TTL cache for computed aggregates."""

import threading
import time
from typing import Any, Callable, Hashable


def make_key(*parts: Any) -> tuple:
    """Cache key from every parameter that affects a result (None == "")."""
    return tuple("" if p is None else str(p) for p in parts)


class TTLCache:
    """Entries are valid while ``now - created_at < ttl``.

    Expired entries are deleted by the lookup that finds them; there is no
    background sweeper. An empty cache is falsy, so compare against None
    when checking whether one was supplied.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[Hashable, tuple[Any, float]] = {}

    def get(self, key: Hashable) -> tuple[Any, float] | None:
        """Return (value, age_seconds), or None on miss or expiry."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, created_at = entry
            age = self._clock() - created_at
            if age >= self.ttl:
                del self._entries[key]
                return None
            return value, age

    def set(self, key: Hashable, value: Any):
        with self._lock:
            self._entries[key] = (value, self._clock())

    def clear(self) -> int:
        with self._lock:
            n = len(self._entries)
            self._entries.clear()
            return n

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
