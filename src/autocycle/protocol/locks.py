"""Advisory inter-process file lock built on flock."""

from __future__ import annotations

import contextlib
import fcntl
from collections.abc import Iterator
from pathlib import Path
from typing import IO


@contextlib.contextmanager
def locked_file(path: Path) -> Iterator[IO[str]]:
    """Hold an exclusive lock on *path* and yield the open handle.

    The handle is opened in ``a+`` mode so callers can read the current
    content (after seeking to 0) and rewrite it while the lock is held.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a+", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield handle
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
