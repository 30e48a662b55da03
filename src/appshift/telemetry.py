"""
Transfer log telemetry.

The bulk-copy step appends one line per transferred file to a log file
(robocopy ``/FP /BYTES /NP`` layout: ``<kind> TAB <bytes> TAB <full path>``).
The elevated script also appends ``##STEP <NAME>`` markers when it enters a
step. TransferLogReader polls that file from a background thread while the
privileged call blocks, and turns new lines into progress and step events.
"""

import logging
import re
import threading
from pathlib import Path
from typing import Callable, NamedTuple, Optional

from appshift.models import CopyProgress, MoveStep

logger = logging.getLogger("appshift.telemetry")

DEFAULT_POLL_INTERVAL = 0.5
STEP_MARKER_PREFIX = "##STEP "

_RECORD_RE = re.compile(r"^\s*(?P<kind>[^\t]*?)\s*\t+\s*(?P<size>\d+)\s*\t(?P<path>.+?)\s*$")

# robocopy reports files it deletes from the destination with /PURGE as
# "*EXTRA File"; those are not transfers.
_IGNORED_KINDS = ("*EXTRA",)

ProgressCallback = Callable[[CopyProgress], None]
StepCallback = Callable[[MoveStep], None]


class TransferRecord(NamedTuple):
    kind: str
    size: int
    path: str


def format_transfer_record(size: int, path: str, kind: str = "New File") -> str:
    """Render one transferred file the way robocopy logs it."""
    return f"\t    {kind:<10}\t\t{size:>12}\t{path}\n"


def format_step_marker(step: MoveStep) -> str:
    return f"{STEP_MARKER_PREFIX}{step.value}\n"


def parse_step_marker(line: str) -> Optional[MoveStep]:
    line = line.strip()
    if not line.startswith(STEP_MARKER_PREFIX):
        return None
    try:
        return MoveStep(line[len(STEP_MARKER_PREFIX):].strip())
    except ValueError:
        return None


def parse_transfer_line(line: str) -> Optional[TransferRecord]:
    """
    Parse a transferred-file line.

    Returns:
        TransferRecord, or None for headers, blank lines, markers and
        anything that is not a completed file transfer.
    """
    match = _RECORD_RE.match(line)
    if not match:
        return None
    kind = match.group("kind").strip()
    if kind.startswith(_IGNORED_KINDS):
        return None
    return TransferRecord(kind=kind, size=int(match.group("size")), path=match.group("path"))


class TransferLogReader:
    """
    Background poller for a transfer log.

    Example:
        with TransferLogReader(log_path, on_progress=print) as reader:
            elevator.run(script)
        # stopped, drained, log file removed
    """

    def __init__(self, log_path: Path, on_progress: Optional[ProgressCallback] = None,
                 on_step: Optional[StepCallback] = None,
                 interval: float = DEFAULT_POLL_INTERVAL, encoding: str = "utf-8"):
        self.log_path = Path(log_path)
        self.on_progress = on_progress
        self.on_step = on_step
        self.interval = interval
        self.encoding = encoding
        self.files_copied = 0
        self.current_file = ""
        self._offset = 0
        self._pending = b""
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._closed = False

    def start(self) -> "TransferLogReader":
        self._thread = threading.Thread(
            target=self._run, name=f"transfer-log:{self.log_path.name}", daemon=True
        )
        self._thread.start()
        return self

    def stop(self) -> None:
        """Stop polling, consume whatever is left, then delete the log file."""
        if self._closed:
            return
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        self.poll()
        self._closed = True
        try:
            self.log_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("could not remove transfer log %s: %s", self.log_path, e)

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            self.poll()

    def poll(self) -> None:
        """Read and dispatch lines appended since the previous poll."""
        if self._closed:
            return
        try:
            with open(self.log_path, "rb") as handle:
                handle.seek(self._offset)
                chunk = handle.read()
        except FileNotFoundError:
            return
        except OSError as e:
            # The copy tool may hold the file exclusively for a moment.
            logger.debug("transfer log read failed, retrying next tick: %s", e)
            return

        if not chunk:
            return
        self._offset += len(chunk)
        data = self._pending + chunk
        lines = data.split(b"\n")
        # Last element is an incomplete line (or b"" when data ends in \n).
        self._pending = lines.pop()

        counted = self.files_copied
        for raw in lines:
            line = raw.decode(self.encoding, errors="replace").rstrip("\r")
            step = parse_step_marker(line)
            if step is not None:
                self._emit_step(step)
                continue
            record = parse_transfer_line(line)
            if record is None:
                continue
            self.files_copied += 1
            self.current_file = record.path

        if self.files_copied > counted:
            self._emit_progress(CopyProgress(self.files_copied, self.current_file))

    def _emit_step(self, step: MoveStep) -> None:
        if self.on_step is None:
            return
        try:
            self.on_step(step)
        except Exception:
            logger.exception("step callback failed for %s", step.value)

    def _emit_progress(self, progress: CopyProgress) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(progress)
        except Exception:
            logger.exception("progress callback failed")
