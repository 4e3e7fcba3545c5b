"""Cross-process advisory lock on a dedicated lock file.

The daemon and the admin CLI both take this lock before touching the
state file, so a write from one is never interleaved with the other.
"""

import errno
import fcntl
import os
import time
from typing import Optional

from utils.logger import get_logger

logger = get_logger("filelock")


class StateIntegrityError(Exception):
    """The persisted state cannot be trusted or safely mutated."""


class LockTimeout(StateIntegrityError):
    """The state lock could not be acquired in time."""


class FileLock:
    """
    Exclusive ``flock`` on a lock file with scoped acquisition.

    Usage:
        lock = FileLock("/var/lib/bastion/blocks.lock", timeout=10)
        with lock:
            ...  # lock held, released on every exit path
    """

    def __init__(self, path: str, timeout: float = 10.0, poll_interval: float = 0.05):
        """
        Initialize lock.

        Args:
            path: Lock file path (created if missing)
            timeout: Seconds to wait before raising LockTimeout; 0 tries once
            poll_interval: Sleep between non-blocking attempts
        """
        self.path = path
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._fd: Optional[int] = None
        self._depth = 0

    @property
    def locked(self) -> bool:
        """True while this instance holds the lock."""
        return self._fd is not None

    def acquire(self) -> None:
        """
        Acquire the lock, re-entrant within one instance.

        Raises:
            LockTimeout: If another process holds it past the timeout
        """
        if self._fd is not None:
            self._depth += 1
            return

        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        deadline = time.monotonic() + self.timeout
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except OSError as e:
                    if e.errno not in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                        raise
                    if time.monotonic() >= deadline:
                        raise LockTimeout(f"Timed out after {self.timeout}s waiting for lock {self.path}")
                    time.sleep(self.poll_interval)
        except BaseException:
            os.close(fd)
            raise

        self._fd = fd
        self._depth = 1

    def release(self) -> None:
        """Release the lock (no-op when not held)."""
        if self._fd is None:
            return
        self._depth -= 1
        if self._depth > 0:
            return
        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.release()
