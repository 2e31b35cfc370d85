from __future__ import annotations

import threading
import weakref
from collections.abc import Hashable, Iterator
from contextlib import contextmanager


class KeyedLocks:
    """Table of per-key locks.

    Holding the lock for one key never blocks callers working on another
    key. Entries live in a weak-valued dict, so a key's lock disappears once
    no thread holds or waits on it.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[Hashable, threading.RLock] = (
            weakref.WeakValueDictionary()
        )
        self._table_lock = threading.Lock()  # guards _locks lookups only

    def lock_for(self, key: Hashable) -> threading.RLock:
        with self._table_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        lock = self.lock_for(key)
        with lock:
            yield

    def __len__(self) -> int:
        with self._table_lock:
            return len(self._locks)
