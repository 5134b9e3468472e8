"""Single-flight locks keyed by (kind, namespace, name)."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

_guard = threading.Lock()
_locks: dict[tuple[str, str, str], threading.Lock] = {}
_refcounts: dict[tuple[str, str, str], int] = {}


@contextmanager
def single_flight(kind: str, namespace: str, name: str) -> Iterator[None]:
    """Hold the lock for one object key for the duration of the block.

    kopf serializes change handlers per object, but resync timers run
    alongside them; both paths take this lock so one key never has two
    reconcile passes in flight. Entries are dropped once no one holds or
    waits on them.
    """
    key = (kind, namespace, name)
    with _guard:
        lock = _locks.setdefault(key, threading.Lock())
        _refcounts[key] = _refcounts.get(key, 0) + 1
    try:
        with lock:
            yield
    finally:
        with _guard:
            _refcounts[key] -= 1
            if _refcounts[key] == 0:
                del _refcounts[key]
                del _locks[key]


def active_keys() -> list[tuple[str, str, str]]:
    with _guard:
        return list(_locks)
