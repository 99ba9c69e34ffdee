from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path
from typing import IO, Optional

from ..errors import LockHeld

logger = logging.getLogger(__name__)


class BuildLock:
    """Exclusive per-work-dir lock so two builds never share a chroot."""

    def __init__(self, path: str):
        self.path = Path(path)
        self._fp: Optional[IO[str]] = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fp = self.path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(fp.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            fp.seek(0)
            holder = fp.read().strip() or "unknown"
            fp.close()
            raise LockHeld(f"another build holds {self.path} (pid {holder})") from e

        fp.seek(0)
        fp.truncate(0)
        fp.write(f"{os.getpid()}\n")
        fp.flush()
        self._fp = fp
        logger.debug("Acquired build lock %s", self.path)

    def release(self) -> None:
        if self._fp is None:
            return
        try:
            fcntl.flock(self._fp.fileno(), fcntl.LOCK_UN)
        finally:
            self._fp.close()
            self._fp = None
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "BuildLock":
        self.acquire()
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()
