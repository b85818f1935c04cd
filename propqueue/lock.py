"""
Cross-process queue lock for PropQueue

Every snapshot or mutation of the queue directory happens while holding an
exclusive flock on a zero-length handle inside that directory. Any other
program writing entries must take the same lock the same way.
"""

import fcntl
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Optional, Union

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class QueueLock:
    """
    Exclusive lock on a queue directory.

    acquire() blocks without a timeout. If the holder dies the kernel drops
    the lock when the descriptor is closed, so no stale-lock recovery exists.
    """

    def __init__(self, lock_path: Union[str, Path]):
        """
        Initialize lock for a handle path.

        Args:
            lock_path: Path of the lock handle, created on first use
        """
        self.lock_path = Path(lock_path)
        self._handle: Optional[IO] = None

    @property
    def locked(self) -> bool:
        return self._handle is not None

    def acquire(self):
        """Block until the exclusive lock is held"""
        if self._handle is not None:
            raise RuntimeError(f"Lock {self.lock_path} is already held by this process")

        try:
            handle = open(self.lock_path, 'a')
        except OSError as e:
            raise ConfigurationError(f"Cannot open queue lock {self.lock_path}: {e}") from e

        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        except OSError as e:
            handle.close()
            raise ConfigurationError(f"Cannot lock {self.lock_path}: {e}") from e

        self._handle = handle
        logger.debug(f"Acquired queue lock {self.lock_path}")

    def release(self):
        """Release the lock; a no-op if it is not held"""
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()
        logger.debug(f"Released queue lock {self.lock_path}")

    @contextmanager
    def held(self):
        """Hold the lock for the duration of a with-block"""
        self.acquire()
        try:
            yield self
        finally:
            self.release()

    def __enter__(self) -> 'QueueLock':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
