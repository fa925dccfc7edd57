"""
Per-key mutual exclusion for in-memory state.

Locks are created on first use and dropped once no thread holds or waits on
them, so memory stays proportional to the number of keys in flight.
"""
from contextlib import ExitStack, contextmanager
from threading import Lock, RLock
from typing import Dict, Iterable, Iterator


class KeyedLock:
    """Re-entrant lock per key; unrelated keys never contend"""

    def __init__(self):
        self._locks: Dict[str, RLock] = {}
        self._refs: Dict[str, int] = {}
        self._guard = Lock()

    def _checkout(self, key: str) -> RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = RLock()
                self._locks[key] = lock
                self._refs[key] = 0
            self._refs[key] += 1
            return lock

    def _release(self, key: str):
        with self._guard:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._checkout(key)
        try:
            with lock:
                yield
        finally:
            self._release(key)

    @contextmanager
    def try_hold(self, key: str) -> Iterator[bool]:
        """Yield True if the lock was free (or already ours), without waiting"""
        lock = self._checkout(key)
        acquired = lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()
            self._release(key)

    @contextmanager
    def hold_many(self, keys: Iterable[str]) -> Iterator[None]:
        # Sorted acquisition order keeps multi-key callers deadlock free
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.hold(key))
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
