"""In-process keyed locks.

Serialises work on the same key (an attachment, or a content hash within
a dedup scope) across worker threads while unrelated keys proceed in
parallel.
"""

from __future__ import annotations

import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager


class KeyedLock:
    """A family of mutexes addressed by key.

    Entries are reference counted and dropped when no thread holds or
    waits on them.

    Usage:
        locks = KeyedLock()
        with locks.hold(("work_item:42", content_hash)):
            ...
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, tuple[threading.Lock, int]] = {}

    def _acquire_entry(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, users + 1)
            return lock

    def _release_entry(self, key: Hashable) -> None:
        with self._guard:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Hold the lock for key for the duration of the block."""
        lock = self._acquire_entry(key)
        try:
            with lock:
                yield
        finally:
            self._release_entry(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
