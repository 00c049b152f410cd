import fcntl
import os
from typing import IO, Optional

from assetsync.errors import SyncLockedError


class SingleWriterLock:
    """
    Enforces a single sync run per namespace state file.
    Uses a non-blocking exclusive filesystem lock. Safe for WSL + Linux.

        with SingleWriterLock(path):
            ...
    """

    def __init__(self, path: str):
        self.path = path
        self._fd: Optional[IO[str]] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        fd = open(self.path, "w")
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fd.close()
            raise SyncLockedError(self.path)
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        self._fd = fd

    def release(self) -> None:
        if self._fd:
            try:
                fcntl.flock(self._fd, fcntl.LOCK_UN)
            finally:
                self._fd.close()
                self._fd = None

    def __enter__(self) -> "SingleWriterLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
