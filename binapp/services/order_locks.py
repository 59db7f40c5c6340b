"""Process-local serialisation of work on a single order."""

from __future__ import annotations

import threading
from contextlib import contextmanager


class _OrderLock:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.waiters = 0


_registry_lock = threading.Lock()
_order_locks: dict[str, _OrderLock] = {}


@contextmanager
def order_guard(order_id):
    """Hold the lock for ``order_id``; entries are dropped once unused."""

    key = str(order_id)
    with _registry_lock:
        entry = _order_locks.get(key)
        if entry is None:
            entry = _order_locks[key] = _OrderLock()
        entry.waiters += 1
    try:
        with entry.lock:
            yield
    finally:
        with _registry_lock:
            entry.waiters -= 1
            if entry.waiters == 0:
                _order_locks.pop(key, None)


def active_order_locks() -> int:
    with _registry_lock:
        return len(_order_locks)
