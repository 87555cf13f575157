"""Per-owner TTL cache for access decisions.

Entries are safe to serve seconds stale; lifecycle writes invalidate the
owner's entry so changes made through this process show up immediately.
"""
import threading
import time
from typing import Callable, Dict, Generic, Optional, Tuple, TypeVar

from workspace_billing.core.metrics import access_cache_entries

T = TypeVar("T")


class AccessStatusCache(Generic[T]):
    def __init__(self, ttl_seconds: float = 60.0, time_fn: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.time_fn = time_fn
        self._entries: Dict[str, Tuple[float, T]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self.time_fn() >= expires_at:
                del self._entries[key]
                access_cache_entries.set(len(self._entries))
                return None
            return value

    def set(self, key: str, value: T) -> None:
        if self.ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[key] = (self.time_fn() + self.ttl_seconds, value)
            access_cache_entries.set(len(self._entries))

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)
            access_cache_entries.set(len(self._entries))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            access_cache_entries.set(0)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
