"""Terminal progress display for bulk copies."""

import shutil
import sys
from typing import Optional

from tqdm import tqdm

from appshift.models import CopyProgress


def truncate_middle(text: str, max_width: int) -> str:
    """Shorten text to max_width as head...tail."""
    if max_width <= 0 or len(text) <= max_width:
        return text
    if max_width <= 3:
        return text[:max_width]
    head = max_width // 2 - 1
    tail = max_width - head - 3
    return f"{text[:head]}...{text[-tail:]}"


class CopyProgressDisplay:
    """
    tqdm bar fed by CopyProgress events.

    Example:
        with CopyProgressDisplay(total=report.file_count) as display:
            engine.relocate(folder, target, on_progress=display.update)
    """

    def __init__(self, total: Optional[int] = None, prefix: str = "Moving",
                 enabled: Optional[bool] = None):
        if enabled is None:
            enabled = sys.stdout.isatty()
        self.enabled = enabled
        self.files_copied = 0
        self._bar = None
        if self.enabled:
            self._bar = tqdm(total=total, desc=prefix, unit="files", leave=False)

    def _path_width(self) -> int:
        try:
            columns = shutil.get_terminal_size((120, 20)).columns
        except Exception:
            columns = 120
        return max(10, columns // 2)

    def update(self, progress: CopyProgress) -> None:
        advance = progress.files_copied - self.files_copied
        if advance <= 0:
            return
        self.files_copied = progress.files_copied
        if self._bar is None:
            return
        self._bar.set_postfix_str(truncate_middle(progress.current_file, self._path_width()),
                                  refresh=False)
        self._bar.update(advance)

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
