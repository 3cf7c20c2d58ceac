# ttl_cache.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional


# ---------------------------
# In-memory read cache with TTL
# (per process; only for read endpoints, never for claim decisions)
# ---------------------------
@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class TTLCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: Any, ttl_sec: float) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl_sec)

    def invalidate(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
