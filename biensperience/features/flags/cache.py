"""
Per-user AI availability cache with an explicit TTL and injected clock.
"""

import threading
import time
from typing import Callable, Dict, Optional, Tuple

DEFAULT_TTL_SECONDS = 300


class AIStatusCache:
    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, time_fn: Callable[[], float] = time.monotonic):
        self.ttl_seconds = max(0.0, float(ttl_seconds))
        self.time_fn = time_fn
        self._entries: Dict[str, Tuple[bool, float]] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[bool]:
        """Cached availability, or None when missing or stale."""
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            value, stored_at = entry
            if self.time_fn() - stored_at >= self.ttl_seconds:
                del self._entries[user_id]
                return None
            return value

    def set(self, user_id: str, available: bool) -> None:
        with self._lock:
            self._entries[user_id] = (bool(available), self.time_fn())

    def get_or_compute(self, user_id: str, compute: Callable[[], bool]) -> bool:
        cached = self.get(user_id)
        if cached is not None:
            return cached
        value = bool(compute())
        self.set(user_id, value)
        return value

    def invalidate(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(user_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
