"""
Candidate folder discovery.

Lists the immediate subdirectories of a root (the roaming AppData folder by
default) and marks the ones that are already junctions.
"""

import logging
import os
from pathlib import Path
from typing import List, Optional

from appshift.fs_utils import LocalFileSystem, format_size
from appshift.models import FolderDescriptor
from appshift.reparse import ReparseInspector

logger = logging.getLogger("appshift.discovery")

DEFAULT_SCAN_LIMIT = 50


def default_scan_root() -> Path:
    appdata = os.environ.get("APPDATA")
    if appdata:
        return Path(appdata)
    return Path.home() / "AppData" / "Roaming"


def describe_folder(path, inspector: Optional[ReparseInspector] = None) -> FolderDescriptor:
    """Descriptor for a single (possibly user-supplied) path."""
    inspector = inspector or ReparseInspector()
    path = Path(path)
    info = inspector.inspect(path)
    return FolderDescriptor(
        id=path.name or str(path),
        name=path.name or str(path),
        source_path=path,
        is_junction=info.is_junction,
        link_target=info.target if info.is_junction else None,
    )


def scan_folders(root: Optional[Path] = None, inspector: Optional[ReparseInspector] = None,
                 limit: int = DEFAULT_SCAN_LIMIT) -> List[FolderDescriptor]:
    """
    Enumerate candidate folders under ``root``.

    Args:
        root: Directory to list (default: default_scan_root())
        inspector: Reparse inspector used to annotate junctions
        limit: Maximum number of folders returned

    Returns:
        Descriptors sorted by name. An unreadable or missing root gives [].
    """
    root = Path(root) if root else default_scan_root()
    inspector = inspector or ReparseInspector()
    try:
        entries = sorted(os.scandir(root), key=lambda e: e.name.lower())
    except OSError as e:
        logger.warning("cannot scan %s: %s", root, e)
        return []

    folders = []
    for entry in entries:
        if len(folders) >= limit:
            break
        # Junctions are directories too; is_dir follows them, which is what we want here.
        try:
            if not entry.is_dir():
                if not inspector.is_junction(entry.path):
                    continue
        except OSError:
            continue
        folders.append(describe_folder(entry.path, inspector))
    return folders


def compute_size_label(folder: FolderDescriptor, filesystem=None,
                       time_budget: Optional[float] = None) -> str:
    """Fill in folder.size_label (measured at the junction target if relocated)."""
    filesystem = filesystem or LocalFileSystem()
    path = folder.link_target if folder.is_junction and folder.link_target else folder.source_path
    tree = filesystem.tree_size(path, time_budget=time_budget)
    label = format_size(tree.total_bytes)
    folder.size_label = label if tree.complete else f">{label}"
    return folder.size_label
