"""
Keyed locks: serialize handlers for the same occurrence while letting
different occurrences proceed in parallel.

Every handler locks occurrence keys ``(routine_id, date_key)``. A handler that
touches several occurrences (a routine resync) takes them with
``hold_many``, which always acquires in sorted order.
"""

import threading
from contextlib import ExitStack, contextmanager
from typing import Dict, Hashable, Iterable, Tuple


def occurrence_key(routine_id: str, date_key: str) -> Tuple[str, str]:
    return (routine_id, date_key)


class KeyedLocks:

    def __init__(self):
        self._lock = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable):
        with self._lock:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._lock:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]

    @contextmanager
    def hold_many(self, keys: Iterable[Hashable]):
        """Hold every key at once; sorted acquisition keeps it deadlock-free."""
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.hold(key))
            yield

    def __len__(self):
        with self._lock:
            return len(self._locks)
