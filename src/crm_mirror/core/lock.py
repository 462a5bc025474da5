"""Advisory file lock preventing two synchronization runs from overlapping."""

from __future__ import annotations

import fcntl
import os
from types import TracebackType
from typing import IO

import structlog

from src.crm_mirror.core.errors import LockError

logger = structlog.get_logger(__name__)


class RunLock:
    """Exclusive, non-blocking flock on a lock file.

    Usable as a context manager. The lock file holds the PID of the owner
    and is emptied, not removed, on release.

    Args:
        path: Lock file path.
    """

    def __init__(self, path: str) -> None:
        self._path = path
        self._handle: IO[str] | None = None

    def acquire(self) -> None:
        """Take the lock or raise LockError if another process holds it."""
        handle = open(self._path, "a+")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            handle.close()
            raise LockError(f"Lock {self._path} is held by another run") from exc

        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._handle = handle
        logger.debug("lock.acquired", path=self._path)

    def release(self) -> None:
        """Release the lock if held."""
        if self._handle is None:
            return
        self._handle.seek(0)
        self._handle.truncate()
        self._handle.flush()
        fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        self._handle.close()
        self._handle = None
        logger.debug("lock.released", path=self._path)

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
