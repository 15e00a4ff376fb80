"""
Exclusive run lock.

Two overlapping runs would race on the same container and data volume, so
every state-changing command holds a non-blocking flock on a lock file for
its whole duration. The lock is released by the kernel if the process dies.
"""

import fcntl
import logging
import os
from typing import Optional

from updates.errors import Busy, PermissionDenied

logger = logging.getLogger(__name__)


class RunLock:
    """Context manager around an exclusive, non-blocking flock"""

    def __init__(self, path: str):
        self.path = path
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        except PermissionError as e:
            raise PermissionDenied(f"Cannot open lock file {self.path}: {e}") from e

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = ''
            try:
                holder = os.pread(fd, 32, 0).decode('ascii', errors='ignore').strip()
            except OSError:
                pass
            os.close(fd)
            raise Busy(f"Another DockSteward run is in progress" + (f" (pid {holder})" if holder else ""))

        os.ftruncate(fd, 0)
        os.pwrite(fd, f"{os.getpid()}\n".encode('ascii'), 0)
        self._fd = fd
        logger.debug(f"Acquired run lock {self.path}")

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            os.ftruncate(self._fd, 0)
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug(f"Released run lock {self.path}")

    @property
    def held(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> 'RunLock':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
