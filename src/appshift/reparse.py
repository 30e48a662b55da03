"""
Reparse-point inspection.

On Windows a relocated folder is a directory junction, which shows up as
FILE_ATTRIBUTE_REPARSE_POINT in the lstat attributes. Elsewhere the local
runner uses directory symlinks, so a symlink counts as a junction there.
"""

import os
import stat
import sys
from pathlib import Path
from typing import NamedTuple, Optional

_WINDOWS_PREFIXES = ("\\\\?\\", "\\??\\")


class LinkInfo(NamedTuple):
    is_junction: bool
    target: Optional[Path] = None


def _strip_prefix(target: str) -> str:
    for prefix in _WINDOWS_PREFIXES:
        if target.startswith(prefix):
            return target[len(prefix):]
    return target


def _has_reparse_attribute(st: os.stat_result) -> bool:
    attributes = getattr(st, "st_file_attributes", 0)
    return bool(attributes & getattr(stat, "FILE_ATTRIBUTE_REPARSE_POINT", 0x400))


def inspect_path(path) -> LinkInfo:
    """
    Tell whether ``path`` is a junction and where it points.

    Args:
        path: Path to inspect (not followed)

    Returns:
        LinkInfo(is_junction, target). Missing paths are not junctions.
        target is None when the link exists but cannot be read.
    """
    path = Path(path)
    try:
        st = os.lstat(path)
    except OSError:
        return LinkInfo(False)

    if sys.platform == "win32":
        is_link = _has_reparse_attribute(st)
    else:
        is_link = stat.S_ISLNK(st.st_mode)
    if not is_link:
        return LinkInfo(False)

    try:
        target = Path(_strip_prefix(os.readlink(path)))
    except (OSError, ValueError):
        return LinkInfo(True, None)
    if not target.is_absolute():
        target = path.parent / target
    return LinkInfo(True, target)


class ReparseInspector:
    """Injectable wrapper around inspect_path."""

    def inspect(self, path) -> LinkInfo:
        return inspect_path(path)

    def is_junction(self, path) -> bool:
        return self.inspect(path).is_junction
