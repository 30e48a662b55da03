"""
Privileged execution bridge.

An Elevator runs a StepScript and returns exit code and captured output.
Three implementations are injected into the engine depending on mode:

- PowerShellElevator: renders the script to PowerShell and runs it through
  one ``Start-Process -Verb RunAs`` (one UAC prompt), blocking until the
  elevated process exits.
- LocalElevator: runs the same steps in this process without elevation.
  Used where the current user may create links already, and by the tests.
- SimulatedElevator: demo mode, touches nothing.

All of them report failures through the exit code table in appshift.script;
none of them raise for a failed step.
"""

import base64
import logging
import os
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Set

from appshift.models import MoveStep
from appshift.script import (
    COPY_FAILURE_THRESHOLD,
    EXIT_COPY_BASE,
    EXIT_LINK_FAILED,
    EXIT_MKDIR_FAILED,
    EXIT_OK,
    EXIT_ROLLBACK_FAILED,
    EXIT_UNLINK_FAILED,
    StepAction,
    StepDescriptor,
    StepScript,
    render_powershell,
)
from appshift.telemetry import format_step_marker, format_transfer_record

logger = logging.getLogger("appshift.bridge")

# robocopy: 8 = some files failed, 16 = fatal (nothing copied)
COPY_PARTIAL_FAILURE = 8
COPY_FATAL = 16


@dataclass(frozen=True)
class ElevatedResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == EXIT_OK


class Elevator:
    """Capability interface for running a step script with privileges."""

    name = "elevator"
    requires_consent = False

    def run(self, script: StepScript) -> ElevatedResult:
        raise NotImplementedError


def encode_powershell(script_text: str) -> str:
    """Base64 of the UTF-16LE script body, as -EncodedCommand expects."""
    return base64.b64encode(script_text.encode("utf-16-le")).decode("ascii")


class PowerShellElevator(Elevator):
    """
    Run a rendered script in an elevated PowerShell.

    The encoded body travels as one Base64 token, so paths never pass
    through command-line quoting. A declined consent prompt makes
    Start-Process throw, which the launcher turns into exit code 1.
    """

    name = "powershell"
    requires_consent = True
    POWERSHELL = "powershell.exe"

    def __init__(self, powershell: str = POWERSHELL):
        self.powershell = powershell

    def build_command(self, script_text: str) -> List[str]:
        encoded = encode_powershell(script_text)
        inner = f"-NoProfile -ExecutionPolicy Bypass -EncodedCommand {encoded}"
        launcher = (
            "try { "
            "$p = Start-Process powershell -Verb RunAs -Wait -PassThru -WindowStyle Hidden "
            f"-ArgumentList '{inner}' -ErrorAction Stop; "
            "exit $p.ExitCode "
            "} catch { "
            "[Console]::Error.WriteLine($_.Exception.Message); exit 1 "
            "}"
        )
        return [
            self.powershell,
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy", "Bypass",
            "-WindowStyle", "Hidden",
            "-Command", launcher,
        ]

    def run(self, script: StepScript) -> ElevatedResult:
        cmd = self.build_command(render_powershell(script))
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            return ElevatedResult(-1, "", f"could not start {self.powershell}: {e}")
        return ElevatedResult(proc.returncode, proc.stdout or "", proc.stderr or "")


class SimulatedElevator(Elevator):
    """Pretend to run the script: write step markers, sleep, succeed."""

    name = "simulate"

    def __init__(self, step_delay: float = 0.0):
        self.step_delay = step_delay

    def run(self, script: StepScript) -> ElevatedResult:
        out = []
        with open(script.log_path, "a", encoding="utf-8") as log:
            for step in script.job_steps():
                log.write(format_step_marker(step))
                log.flush()
                for descriptor in script.steps:
                    if descriptor.step is step:
                        out.append(f"[simulated] {descriptor.describe()}")
                if self.step_delay:
                    time.sleep(self.step_delay)
        return ElevatedResult(EXIT_OK, "\n".join(out) + "\n", "")


class _StepFailed(Exception):
    def __init__(self, exit_code: int, message: str):
        super().__init__(message)
        self.exit_code = exit_code


class LocalElevator(Elevator):
    """
    Execute step descriptors in-process.

    Mirrors the rendered PowerShell: same order, same transfer log format,
    same exit codes. Junctions are real junctions on Windows and directory
    symlinks elsewhere.
    """

    name = "local"

    def run(self, script: StepScript) -> ElevatedResult:
        stdout: List[str] = []
        current: Optional[MoveStep] = None
        with open(script.log_path, "a", encoding="utf-8") as log:
            try:
                for descriptor in script.steps:
                    if descriptor.step is not current:
                        current = descriptor.step
                        log.write(format_step_marker(current))
                        log.flush()
                    self._execute(descriptor, log, stdout)
            except _StepFailed as e:
                return ElevatedResult(e.exit_code, "\n".join(stdout), str(e))
        return ElevatedResult(EXIT_OK, "\n".join(stdout), "")

    def _execute(self, d: StepDescriptor, log, stdout: List[str]) -> None:
        if d.action is StepAction.MAKE_DIRECTORY:
            stdout.append("Creating target directory...")
            try:
                Path(d.source).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise _StepFailed(EXIT_MKDIR_FAILED, f"mkdir failed: {e}")

        elif d.action is StepAction.BULK_MOVE:
            stdout.append("Moving files...")
            rc = move_tree(d.source, d.destination, log=log, purge="/PURGE" in d.flags)
            if rc >= COPY_FAILURE_THRESHOLD:
                raise _StepFailed(EXIT_COPY_BASE + rc, f"bulk move failed with code {rc}")

        elif d.action is StepAction.COMPRESS:
            stdout.append("Compression is only applied by the native runner; skipped")

        elif d.action is StepAction.REMOVE_EMPTY_DIRECTORY:
            try:
                if Path(d.source).exists():
                    os.rmdir(d.source)
            except OSError as e:
                if not d.required:
                    stdout.append(f"left non-empty directory in place: {d.source}")
                    return
                self._rollback(d, f"source cleanup failed: {e}")

        elif d.action is StepAction.CREATE_JUNCTION:
            stdout.append("Creating junction...")
            try:
                create_junction(d.source, d.destination)
            except OSError as e:
                self._rollback(d, f"junction creation failed: {e}")

        elif d.action is StepAction.REMOVE_JUNCTION:
            try:
                remove_junction(d.source)
            except OSError as e:
                raise _StepFailed(EXIT_UNLINK_FAILED, f"junction removal failed: {e}")

        else:
            raise ValueError(f"unknown action {d.action}")

    def _rollback(self, d: StepDescriptor, message: str) -> None:
        """Move the relocated data back to the source path, then fail."""
        rc = move_tree(d.destination, d.source)
        if rc >= COPY_FAILURE_THRESHOLD:
            raise _StepFailed(EXIT_ROLLBACK_FAILED, f"{message}; moving data back failed ({rc})")
        raise _StepFailed(EXIT_LINK_FAILED, f"{message}; data moved back to {d.source}")


def create_junction(link: Path, target: Path) -> None:
    if sys.platform == "win32":
        import _winapi
        _winapi.CreateJunction(str(target), str(link))
    else:
        os.symlink(str(target), str(link), target_is_directory=True)


def remove_junction(link: Path) -> None:
    """Remove the link itself, never what it points at."""
    if os.path.islink(link):
        os.unlink(link)
    else:
        # A Windows junction is removed by rmdir without touching its target.
        os.rmdir(link)


def _move_file(src: Path, dst: Path) -> None:
    try:
        os.replace(src, dst)
    except OSError:
        shutil.copy2(src, dst, follow_symlinks=False)
        os.unlink(src)


def move_tree(source, destination, log=None, purge: bool = False) -> int:
    """
    Move every entry under ``source`` into ``destination``, robocopy style.

    Files are moved one by one and logged to ``log``; emptied source
    subdirectories are removed, the source root is left in place. With
    ``purge``, destination files absent from the source are deleted.

    Returns:
        robocopy-compatible exit code: 0/1 success, 8 partial failure,
        16 fatal
    """
    source, destination = Path(source), Path(destination)
    if not source.is_dir():
        return COPY_FATAL
    try:
        destination.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.warning("cannot create %s: %s", destination, e)
        return COPY_FATAL

    moved = 0
    failed = 0
    seen: Set[Path] = set()
    for dirpath, dirnames, filenames in os.walk(source):
        current = Path(dirpath)
        rel_dir = current.relative_to(source)
        target_dir = destination / rel_dir
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("cannot create %s: %s", target_dir, e)
            failed += 1
            dirnames[:] = []
            continue
        # Links to directories are moved as entries, not descended into.
        linked = [d for d in dirnames if (current / d).is_symlink()]
        dirnames[:] = [d for d in dirnames if d not in linked]
        for name in sorted(filenames) + linked:
            src_file = current / name
            dst_file = target_dir / name
            seen.add(rel_dir / name)
            try:
                size = src_file.lstat().st_size
                _move_file(src_file, dst_file)
            except OSError as e:
                logger.warning("move failed %s: %s", src_file, e)
                failed += 1
                continue
            moved += 1
            if log is not None:
                log.write(format_transfer_record(size, str(src_file)))
                log.flush()
        for d in dirnames:
            seen.add(rel_dir / d)

    if purge:
        for dirpath, dirnames, filenames in os.walk(destination):
            rel_dir = Path(dirpath).relative_to(destination)
            for name in filenames:
                if rel_dir / name in seen:
                    continue
                extra = Path(dirpath) / name
                try:
                    os.unlink(extra)
                except OSError:
                    failed += 1
                    continue
                if log is not None:
                    log.write(format_transfer_record(0, str(extra), kind="*EXTRA File"))

    # Remove emptied subdirectories bottom-up; the root stays for the caller.
    for dirpath, dirnames, filenames in os.walk(source, topdown=False):
        if Path(dirpath) == source:
            continue
        try:
            os.rmdir(dirpath)
        except OSError:
            pass

    if failed:
        return COPY_PARTIAL_FAILURE
    return 1 if moved else 0
