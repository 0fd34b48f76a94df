"""
Merge lock registry — one exclusive lock per merge target scenario.

Merges onto the same target must not interleave.  Each target id maps to a
``threading.Lock``; the map itself is guarded by its own lock.  Acquisition
is try-with-timeout, never a queue: a second merge waits briefly and then
fails with MergeInProgressError so the caller can retry.

Usage:
    from planner.services.merge_lock import merge_locks

    with merge_locks.hold(target_id, timeout=2.0):
        ...  # diff, resolve, write, commit
"""

import logging
from contextlib import contextmanager
from threading import Lock

from planner.core.exceptions import MergeInProgressError

logger = logging.getLogger(__name__)


class MergeLockRegistry:
    """In-process map of per-target-scenario merge locks."""

    def __init__(self):
        self._locks: dict[int, Lock] = {}
        self._guard = Lock()

    def _lock_for(self, key: int) -> Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = Lock()
                self._locks[key] = lock
            return lock

    def acquire(self, key: int, timeout: float = 0) -> bool:
        """Try to take the lock for ``key``; wait at most ``timeout`` seconds."""
        lock = self._lock_for(key)
        if timeout <= 0:
            return lock.acquire(blocking=False)
        return lock.acquire(timeout=timeout)

    def release(self, key: int) -> None:
        with self._guard:
            lock = self._locks.get(key)
        if lock is None or not lock.locked():
            raise RuntimeError(f"Merge lock for scenario id={key} is not held")
        lock.release()

    def is_locked(self, key: int) -> bool:
        with self._guard:
            lock = self._locks.get(key)
        return bool(lock and lock.locked())

    def held(self) -> list[int]:
        """Target scenario ids whose merge lock is currently taken."""
        with self._guard:
            return sorted(k for k, lock in self._locks.items() if lock.locked())

    @contextmanager
    def hold(self, key: int, timeout: float = 0):
        """Hold the lock for ``key`` for the duration of the block.

        Raises MergeInProgressError if it cannot be taken within ``timeout``.
        """
        if not self.acquire(key, timeout):
            logger.warning("Merge lock busy for target scenario id=%s (timeout=%ss)", key, timeout)
            raise MergeInProgressError(key, timeout)
        logger.debug("Merge lock acquired for target scenario id=%s", key)
        try:
            yield
        finally:
            self.release(key)
            logger.debug("Merge lock released for target scenario id=%s", key)

    def reset(self) -> None:
        """Drop all locks (for testing)."""
        with self._guard:
            self._locks.clear()


# Process-wide registry used by MergeCoordinator
merge_locks = MergeLockRegistry()
