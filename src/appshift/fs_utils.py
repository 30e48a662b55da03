"""
Filesystem capability used by the safety checks and discovery.

LocalFileSystem talks to the real disk. Tests substitute subclasses that
override probe_write or free_space.
"""

import os
import shutil
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

PROBE_PREFIX = ".appshift-probe-"


@dataclass(frozen=True)
class TreeSize:
    """
    Result of walking a directory tree.

    Attributes:
        total_bytes: Sum of regular file sizes seen
        file_count: Number of regular files seen
        complete: False if the walk stopped at its time budget, in which
            case both numbers are lower bounds
    """
    total_bytes: int
    file_count: int
    complete: bool = True


def format_size(size: int) -> str:
    """Human-readable byte count (1024 based)."""
    value = float(size)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if value < 1024 or unit == "TB":
            if unit == "B":
                return f"{int(value)} B"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"


def nearest_existing_ancestor(path: Path) -> Path:
    """Return path itself or the closest parent that exists."""
    path = Path(path).absolute()
    for candidate in (path, *path.parents):
        if candidate.exists():
            return candidate
    return Path(path.anchor or os.sep)


class LocalFileSystem:
    """Real-disk implementation of the filesystem capability."""

    def exists(self, path) -> bool:
        return Path(path).exists()

    def is_dir(self, path) -> bool:
        return Path(path).is_dir()

    def probe_write(self, directory) -> None:
        """
        Create and delete a marker file inside ``directory``.

        Raises:
            OSError: If the marker cannot be created or removed
        """
        marker = Path(directory) / f"{PROBE_PREFIX}{uuid.uuid4().hex}"
        with open(marker, "xb"):
            pass
        marker.unlink()

    def tree_size(self, root, time_budget: Optional[float] = None) -> TreeSize:
        """
        Total size of regular files under ``root`` (symlinks not followed).

        Args:
            root: Directory to walk
            time_budget: Seconds before giving up with a partial result
        """
        deadline = time.monotonic() + time_budget if time_budget else None
        total = 0
        count = 0
        stack = [Path(root)]
        while stack:
            if deadline is not None and time.monotonic() > deadline:
                return TreeSize(total, count, complete=False)
            current = stack.pop()
            try:
                with os.scandir(current) as entries:
                    for entry in entries:
                        try:
                            if entry.is_dir(follow_symlinks=False):
                                stack.append(Path(entry.path))
                            elif entry.is_file(follow_symlinks=False):
                                total += entry.stat(follow_symlinks=False).st_size
                                count += 1
                        except OSError:
                            continue
            except OSError:
                continue
        return TreeSize(total, count)

    def free_space(self, path) -> int:
        """Free bytes on the volume that holds ``path`` (or would hold it)."""
        return shutil.disk_usage(nearest_existing_ancestor(Path(path))).free
