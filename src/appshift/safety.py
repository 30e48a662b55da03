"""
Pre-flight safety checks.

Both checks run unprivileged before any elevation prompt. They are
heuristics: a process can open the folder, or another writer can fill the
target volume, after the check passes. That window is accepted; the copy
tool's own exit code is the backstop.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from appshift.exceptions import SafetyCheckError
from appshift.fs_utils import LocalFileSystem, TreeSize, format_size
from appshift.models import ErrorKind

logger = logging.getLogger("appshift.safety")

SPACE_MARGIN = 1.10
DEFAULT_SIZE_SCAN_BUDGET = 30.0


@dataclass
class SafetyReport:
    tree: TreeSize
    free_bytes: int
    required_bytes: int
    warnings: List[str] = field(default_factory=list)


class SafetyChecker:
    """
    Lock probe and free-space check for a relocation.

    Args:
        filesystem: Filesystem capability (LocalFileSystem by default)
        size_scan_budget: Seconds allowed for sizing the source tree
        margin: Required free space as a multiple of the source size
    """

    def __init__(self, filesystem=None, size_scan_budget: float = DEFAULT_SIZE_SCAN_BUDGET,
                 margin: float = SPACE_MARGIN):
        self.filesystem = filesystem or LocalFileSystem()
        self.size_scan_budget = size_scan_budget
        self.margin = margin

    def check_lock(self, source: Path) -> None:
        try:
            self.filesystem.probe_write(source)
        except OSError as e:
            raise SafetyCheckError(
                ErrorKind.FOLDER_LOCKED,
                f"Folder appears to be in use by another process (write probe failed: {e})",
            )

    def check_space(self, source: Path, target_root: Path) -> SafetyReport:
        tree = self.filesystem.tree_size(source, time_budget=self.size_scan_budget)
        try:
            free = self.filesystem.free_space(target_root)
        except OSError as e:
            raise SafetyCheckError(
                ErrorKind.DIRECTORY_CREATION_FAILED,
                f"Target volume for {target_root} is not available: {e}",
            )
        required = int(tree.total_bytes * self.margin)
        report = SafetyReport(tree=tree, free_bytes=free, required_bytes=required)

        if free < required:
            qualifier = "at least " if not tree.complete else ""
            raise SafetyCheckError(
                ErrorKind.INSUFFICIENT_SPACE,
                f"Not enough space on target: need {qualifier}{format_size(required)} "
                f"(source {format_size(tree.total_bytes)} + 10%), "
                f"free {format_size(free)}",
            )
        if not tree.complete:
            report.warnings.append(
                f"Size scan stopped after {self.size_scan_budget:.0f}s; "
                f"{format_size(tree.total_bytes)} counted so far fits, the rest is unchecked"
            )
        return report

    def run(self, source: Path, target_root: Path) -> SafetyReport:
        """
        Run the lock check, then the space check.

        Raises:
            SafetyCheckError: On the first failing check
        """
        self.check_lock(source)
        report = self.check_space(source, target_root)
        logger.debug("safety ok source=%s files=%d bytes=%d free=%d",
                     source, report.tree.file_count, report.tree.total_bytes, report.free_bytes)
        return report
