"""Process-wide registry handing out one mutex per show."""

from contextlib import contextmanager
from typing import Dict, Hashable, Iterator
import logging
import threading

logger = logging.getLogger(__name__)


class LockRegistry:
    """Keyed lock manager.

    ``lock_for`` returns the same lock instance for every call with the same key.
    The registry guard is held only for the check-then-insert on the map, never
    while a caller holds a show lock. Entries are kept for the life of the process.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}

    def lock_for(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
                logger.debug("Registered lock for %r", key)
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Hold the lock for ``key`` for the duration of the block; released on any exit."""
        lock = self.lock_for(key)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()

    def __contains__(self, key: Hashable) -> bool:
        with self._guard:
            return key in self._locks

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
