"""
Filesystem helpers: recursive walk and disk usage sampling.
"""

import os
import stat
from datetime import datetime, timezone
from typing import Iterator, NamedTuple, Tuple


def walk(root: str) -> Iterator[Tuple[str, os.stat_result]]:
    """
    Walk a tree depth-first, yielding (path, lstat) for root and every descendant.

    Entries within a directory are visited in lexical order. Symlinks are
    reported but not followed. Any OSError propagates to the caller.
    """
    info = os.lstat(root)
    yield root, info

    if not stat.S_ISDIR(info.st_mode):
        return

    for name in sorted(os.listdir(root)):
        yield from walk(os.path.join(root, name))


def permission_bits(mode: int) -> int:
    """Strip file type and special bits, keeping rwx permissions."""
    return mode & 0o777


def modified_time(info: os.stat_result) -> datetime:
    """Filesystem mtime as an aware UTC datetime."""
    return datetime.fromtimestamp(info.st_mtime, timezone.utc)


class DiskUsage(NamedTuple):
    """Usage of the filesystem containing a path, in bytes."""
    free: int
    available: int
    size: int
    used: int
    used_pct: float

    @classmethod
    def sample(cls, path: str) -> "DiskUsage":
        """
        Sample the filesystem containing `path`.

        Raises:
            OSError: If the filesystem cannot be queried
        """
        st = os.statvfs(path)
        size = st.f_blocks * st.f_frsize
        free = st.f_bfree * st.f_frsize
        available = st.f_bavail * st.f_frsize
        used = size - free
        used_pct = (used / size * 100.0) if size else 0.0
        return cls(free=free, available=available, size=size, used=used, used_pct=used_pct)
