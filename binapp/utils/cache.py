from __future__ import annotations

import threading
import time
from typing import Any, Callable

from flask import current_app, has_app_context


class TTLCache:
    """Small thread-safe key/value cache with a fixed time-to-live."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[float, Any]] = {}

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            stored_at, value = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[key]
                return default
            return value

    def set(self, key: str, value: Any) -> None:
        if self.ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[key] = (self._clock(), value)

    def invalidate(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)


ORDER_LIST_CACHE_KEY = "binapp.order_list_cache"


def order_list_cache() -> TTLCache | None:
    if not has_app_context():
        return None
    return current_app.extensions.get(ORDER_LIST_CACHE_KEY)


def invalidate_order_list() -> None:
    """Drop the cached order listing so allocated flags are recomputed."""

    cache = order_list_cache()
    if cache is not None:
        cache.invalidate()
