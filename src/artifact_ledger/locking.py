"""Advisory write lock for a store.

The store supports one writer at a time. Mutating operations hold an
exclusive fcntl lock on ``<state_dir>/.locks/store.lock`` so a second process
(or thread) waits, up to a timeout, instead of interleaving read-modify-write
cycles on the catalog. Readers take no lock; atomic renames give them a
consistent view.

The lock is reentrant within one thread so that a save can trigger retention
while already holding it.

Example usage:
    lock = FileLock(state_dir / ".locks" / "store.lock")
    with lock.exclusive(timeout=30.0):
        ...
"""

from __future__ import annotations

import fcntl
import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from artifact_ledger.errors import StoreError

LOCKS_DIRNAME = ".locks"
STORE_LOCK_NAME = "store.lock"


class LockError(StoreError):
    """Base exception for locking errors."""


class LockAcquisitionError(LockError):
    """Raised when a lock cannot be acquired within the timeout."""


class FileLock:
    """Cross-process exclusive file lock using fcntl.flock.

    Thread safety comes from a reentrant threading lock held alongside the
    file lock; the file lock is taken on the outermost acquisition only.
    """

    def __init__(self, lock_path: Path) -> None:
        self.lock_path = lock_path
        self._fd: int | None = None
        self._depth = 0
        self._thread_lock = threading.RLock()

    @property
    def is_locked(self) -> bool:
        """Check if this lock instance currently holds the file lock."""
        return self._fd is not None

    def acquire(self, timeout: float | None = None) -> None:
        """Acquire the lock, waiting at most ``timeout`` seconds.

        Raises:
            LockAcquisitionError: If the timeout expires.
        """
        if not self._thread_lock.acquire(timeout=-1 if timeout is None else timeout):
            raise LockAcquisitionError(f"Timeout acquiring lock on {self.lock_path} after {timeout:.2f}s")

        if self._depth > 0:
            self._depth += 1
            return

        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(self.lock_path), os.O_RDWR | os.O_CREAT)
        except OSError:
            self._thread_lock.release()
            raise

        start_time = time.monotonic()
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                elapsed = time.monotonic() - start_time
                if timeout is not None and elapsed >= timeout:
                    os.close(fd)
                    self._thread_lock.release()
                    raise LockAcquisitionError(
                        f"Timeout acquiring lock on {self.lock_path} after {timeout:.2f}s"
                    ) from None
                time.sleep(0.01)

        self._fd = fd
        self._depth = 1

    def release(self) -> None:
        """Release one level of the lock."""
        if self._depth == 0 or self._fd is None:
            raise LockError(f"Lock not held: {self.lock_path}")
        self._depth -= 1
        if self._depth == 0:
            try:
                fcntl.flock(self._fd, fcntl.LOCK_UN)
                os.close(self._fd)
            finally:
                self._fd = None
        self._thread_lock.release()

    @contextmanager
    def exclusive(self, timeout: float | None = None) -> Iterator[None]:
        """Context manager holding the lock for the enclosed block."""
        self.acquire(timeout=timeout)
        try:
            yield
        finally:
            self.release()
