"""Single-writer lock for a store file.

A store must only ever be written by one session at a time.  The lock is an
OS-level :class:`filelock.FileLock` on a ``<store>.lock`` sibling, so it also
excludes other processes.  The rebuilder takes no lock of its own; it runs
inside whichever session or command already holds this one.

Usage::

    from listingstore.storage.locking import store_lock

    with store_lock(Path("master-listings.xlsx"), timeout=10):
        ...
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Iterator
from pathlib import Path

from filelock import FileLock, Timeout

from listingstore.core.exceptions import StoreLockedError

__all__ = ["LOCK_SUFFIX", "StoreLock", "lock_path_for", "store_lock"]

logger = logging.getLogger(__name__)

LOCK_SUFFIX: str = ".lock"


def lock_path_for(store_path: Path) -> Path:
    """Return the lock file guarding *store_path*."""
    store_path = Path(store_path)
    return store_path.with_name(store_path.name + LOCK_SUFFIX)


class StoreLock:
    """Explicit acquire/release wrapper around the store's file lock.

    Args:
        store_path: Store the lock guards.
        timeout: Seconds to wait for a competing holder.  ``0`` fails
            immediately.
    """

    def __init__(self, store_path: Path, timeout: float) -> None:
        self.store_path = Path(store_path)
        self.timeout = timeout
        self.path = lock_path_for(self.store_path)
        self._lock = FileLock(str(self.path))

    @property
    def is_locked(self) -> bool:
        return self._lock.is_locked

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            StoreLockedError: If the lock is still held after ``timeout``.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._lock.acquire(timeout=self.timeout)
        except Timeout as exc:
            raise StoreLockedError(self.store_path, self.timeout) from exc
        logger.debug("Acquired store lock %s", self.path)

    def release(self) -> None:
        if not self._lock.is_locked:
            return
        self._lock.release()
        logger.debug("Released store lock %s", self.path)


@contextlib.contextmanager
def store_lock(store_path: Path, *, timeout: float = 10.0) -> Iterator[StoreLock]:
    """Hold the lock on *store_path* for the duration of the ``with`` block.

    Raises:
        StoreLockedError: If another holder keeps the lock past ``timeout``.
    """
    lock = StoreLock(store_path, timeout)
    lock.acquire()
    try:
        yield lock
    finally:
        lock.release()
