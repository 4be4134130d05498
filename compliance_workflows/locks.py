"""
Keyed lock registry.

One re-entrant lock per key (``instance:<id>``, ``template:<id>``,
``entity:<type>:<id>``) so operations on the same row serialize within the
process. Cross-process safety comes from compare-and-swap in storage.

Locks are reference counted and dropped from the registry once no caller
holds or waits on them.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List


class KeyedLocks:
    """Registry of re-entrant locks by key"""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._refs: Dict[str, int] = {}
        self._guard = threading.Lock()

    def _checkout(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
                self._refs[key] = 0
            self._refs[key] += 1
            return lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        """Acquire the locks for ``keys`` in sorted order"""
        ordered = sorted(set(keys))
        checked_out: List[str] = []
        acquired: List[threading.RLock] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                checked_out.append(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in reversed(checked_out):
                self._checkin(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
