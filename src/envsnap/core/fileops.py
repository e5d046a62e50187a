"""File helpers: atomic writes and exclusive resource locks."""

from __future__ import annotations

import fcntl
import hashlib
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional


def atomic_write(
    path: Path, data: bytes, mode: Optional[int] = None, mtime: Optional[float] = None
) -> None:
    """Write ``data`` to ``path`` so readers see either the old or the new file.

    The data goes to a temporary file in the same directory, is flushed to
    disk, gets its mode and mtime, and is then renamed over ``path``.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_name, mode)
        if mtime is not None:
            os.utime(tmp_name, (mtime, mtime))
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


@contextmanager
def exclusive_lock(lock_dir: Path, resource: str) -> Iterator[Path]:
    """Hold an exclusive ``flock`` on ``resource`` for the duration of the block.

    Lock files live in ``lock_dir`` and are named after a hash of the
    resource, so any string (a path, a package manager name) can be locked.
    The lock is released when the block exits, whether it raised or not.
    """
    lock_dir = Path(lock_dir)
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_path = lock_dir / (hashlib.sha256(resource.encode("utf-8")).hexdigest()[:32] + ".lock")
    with open(lock_path, "a") as f:
        fcntl.flock(f.fileno(), fcntl.LOCK_EX)
        try:
            yield lock_path
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)
