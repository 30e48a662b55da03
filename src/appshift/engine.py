"""
Relocation orchestration for appshift.

Moves a folder to another volume and leaves a junction behind (relocate),
or removes the junction and moves the data home (restore).
"""

import logging
import os
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Callable, Dict, Optional

from appshift.bridge import Elevator, ElevatedResult, LocalElevator, PowerShellElevator, SimulatedElevator
from appshift.config import ExecutionMode
from appshift.exceptions import InvalidTransition, SafetyCheckError
from appshift.fs_utils import LocalFileSystem, TreeSize, format_size
from appshift.models import (
    CopyProgress,
    ErrorKind,
    FolderDescriptor,
    JobDirection,
    MoveStep,
    RelocationJob,
    RelocationOptions,
    RelocationResult,
    Severity,
)
from appshift.reparse import ReparseInspector
from appshift.safety import DEFAULT_SIZE_SCAN_BUDGET, SafetyChecker, SafetyReport
from appshift.script import (
    StepScript,
    build_relocation_script,
    build_restore_script,
    classify_exit_code,
    copy_tool_exit_code,
)
from appshift.telemetry import DEFAULT_POLL_INTERVAL, TransferLogReader

logger = logging.getLogger("appshift.engine")

LogCallback = Callable[[str, Severity], None]
StepCallback = Callable[[MoveStep], None]
ProgressCallback = Callable[[CopyProgress], None]

_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.COMMAND: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


def _default_log(message: str, severity: Severity) -> None:
    logger.log(_LOG_LEVELS.get(severity, logging.INFO), "[%s] %s", severity.value, message)


def elevator_for_mode(mode: ExecutionMode) -> Elevator:
    if mode is ExecutionMode.NATIVE:
        return PowerShellElevator()
    if mode is ExecutionMode.SIMULATE:
        return SimulatedElevator()
    return LocalElevator()


class JobRegistry:
    """At most one non-terminal job per source path."""

    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: Dict[str, RelocationJob] = {}

    @staticmethod
    def _key(path) -> str:
        return os.path.normcase(os.path.abspath(str(path)))

    def acquire(self, path, job: RelocationJob) -> bool:
        key = self._key(path)
        with self._lock:
            if key in self._jobs:
                return False
            self._jobs[key] = job
            return True

    def release(self, path, job: RelocationJob) -> None:
        key = self._key(path)
        with self._lock:
            if self._jobs.get(key) is job:
                del self._jobs[key]

    def active(self, path) -> Optional[RelocationJob]:
        with self._lock:
            return self._jobs.get(self._key(path))


class RelocationEngine:
    """
    Runs relocate and restore jobs.

    Responsibilities:
    - Pre-flight gates (unprivileged, before any consent prompt)
    - One privileged invocation per job, with transfer telemetry alongside
    - Mapping the script exit code to a typed failure
    - Keeping the FolderDescriptor in step with what is on disk

    Capabilities are injected so tests and demo mode can swap them out.
    """

    def __init__(self, elevator: Optional[Elevator] = None, filesystem=None,
                 inspector: Optional[ReparseInspector] = None,
                 mode: ExecutionMode = ExecutionMode.LOCAL,
                 log: Optional[LogCallback] = None,
                 poll_interval: float = DEFAULT_POLL_INTERVAL,
                 size_scan_budget: float = DEFAULT_SIZE_SCAN_BUDGET,
                 log_dir: Optional[Path] = None):
        self.mode = mode
        self.elevator = elevator or elevator_for_mode(mode)
        self.filesystem = filesystem or LocalFileSystem()
        self.inspector = inspector or ReparseInspector()
        self.checker = SafetyChecker(self.filesystem, size_scan_budget=size_scan_budget)
        self.poll_interval = poll_interval
        self.log_dir = Path(log_dir) if log_dir else Path(tempfile.gettempdir())
        self.registry = JobRegistry()
        self._log_callback = log or _default_log

    @property
    def checks_enabled(self) -> bool:
        return self.mode is not ExecutionMode.SIMULATE

    def _log(self, message: str, severity: Severity = Severity.INFO) -> None:
        self._log_callback(message, severity)

    def active_job(self, folder: FolderDescriptor) -> Optional[RelocationJob]:
        return self.registry.active(folder.source_path)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _new_log_path(self) -> Path:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        return self.log_dir / f"appshift-{uuid.uuid4().hex[:12]}.log"

    def plan_relocation(self, folder: FolderDescriptor, target_root: Path,
                        options: Optional[RelocationOptions] = None) -> StepScript:
        """Step script a relocation would run. Nothing is executed."""
        destination = Path(target_root).absolute() / folder.name
        return build_relocation_script(folder.source_path, destination,
                                       options or RelocationOptions(), self._new_log_path())

    def plan_restore(self, folder: FolderDescriptor) -> StepScript:
        backing = self.inspector.inspect(folder.source_path).target or folder.link_target
        if backing is None:
            raise SafetyCheckError(ErrorKind.BACKING_DATA_MISSING,
                                   f"{folder.source_path} has no known backing directory")
        return build_restore_script(folder.source_path, backing, self._new_log_path())

    # ------------------------------------------------------------------
    # Step bookkeeping
    # ------------------------------------------------------------------

    def _enter(self, job: RelocationJob, step: MoveStep, on_step: Optional[StepCallback]) -> None:
        try:
            entered = job.advance_to(step)
        except InvalidTransition as e:
            logger.warning("ignoring step event: %s", e)
            return
        for s in entered:
            logger.debug("%s %s -> %s", job.direction.value, job.folder.name, s.value)
            if on_step is not None:
                on_step(s)

    def _fail(self, job: RelocationJob, kind: ErrorKind, detail: str,
              on_step: Optional[StepCallback], exit_code: Optional[int] = None) -> RelocationResult:
        furthest = job.furthest_step
        job.fail()
        if on_step is not None:
            on_step(MoveStep.FAILED)
        self._log(f"{job.folder.name}: {kind.value}: {detail}", Severity.ERROR)
        return RelocationResult.failed(kind, detail=detail, exit_code=exit_code,
                                       furthest_step=furthest)

    def _progress_sink(self, job: RelocationJob,
                       on_progress: Optional[ProgressCallback]) -> ProgressCallback:
        def sink(progress: CopyProgress) -> None:
            if job.is_terminal:
                return
            if job.progress is not None and progress.files_copied <= job.progress.files_copied:
                return
            job.progress = progress
            if on_progress is not None:
                on_progress(progress)
        return sink

    # ------------------------------------------------------------------
    # Privileged call
    # ------------------------------------------------------------------

    def _run_script(self, job: RelocationJob, script: StepScript,
                    on_step: Optional[StepCallback],
                    on_progress: Optional[ProgressCallback]) -> ElevatedResult:
        if self.elevator.requires_consent:
            self._log("Requesting administrator privileges (UAC) to perform the operation...",
                      Severity.WARNING)
        for descriptor in script.steps:
            self._log(descriptor.describe(), Severity.COMMAND)
        self._log(f"Executing elevated script via {self.elevator.name}...", Severity.COMMAND)

        reader = TransferLogReader(
            script.log_path,
            on_progress=self._progress_sink(job, on_progress),
            on_step=lambda step: self._enter(job, step, on_step),
            interval=self.poll_interval,
        )
        with reader:
            result = self.elevator.run(script)

        severity = Severity.INFO if result.ok else Severity.ERROR
        self._log(f"Elevated script exited with code {result.exit_code} "
                  f"({reader.files_copied} files transferred)", severity)
        if result.stdout.strip() and not result.ok:
            self._log(f"Output: {result.stdout.strip()}", Severity.INFO)
        if result.stderr.strip():
            self._log(f"Error: {result.stderr.strip()}", Severity.ERROR)
        return result

    def _exit_failure(self, job: RelocationJob, result: ElevatedResult, kind: ErrorKind,
                      on_step: Optional[StepCallback], source: Path, backing: Path) -> RelocationResult:
        code = result.exit_code
        if kind is ErrorKind.COPY_FAILED:
            tool_code = copy_tool_exit_code(code)
            detail = (f"bulk copy failed with exit code {tool_code}; files may be split between "
                      f"{source} and {backing}")
            return self._fail(job, kind, detail, on_step, exit_code=tool_code)
        if kind is ErrorKind.LINK_CREATION_FAILED:
            detail = f"junction could not be created; data was moved back to {source}"
        elif kind is ErrorKind.ROLLBACK_FAILED:
            detail = (f"junction could not be created and the data could not be moved back; "
                      f"it is at {backing}, move it to {source} by hand")
        elif kind is ErrorKind.DIRECTORY_CREATION_FAILED:
            detail = f"could not create {backing}"
        elif kind is ErrorKind.JUNCTION_REMOVAL_FAILED:
            detail = f"could not remove junction {source}; nothing was moved"
        else:
            detail = f"elevated process exited with code {code} (elevation declined or failed)"
        return self._fail(job, kind, detail, on_step, exit_code=code)

    # ------------------------------------------------------------------
    # Relocate
    # ------------------------------------------------------------------

    def relocate(self, folder: FolderDescriptor, target_root: Path,
                 options: Optional[RelocationOptions] = None,
                 on_step: Optional[StepCallback] = None,
                 on_progress: Optional[ProgressCallback] = None) -> RelocationResult:
        """
        Move ``folder`` under ``target_root`` and put a junction in its place.

        Args:
            folder: Folder to move; updated on success
            target_root: Destination prefix; data lands in target_root/<name>
            options: Copy options
            on_step: Called for every step entered, including FAILED
            on_progress: Called when the transferred file count grows

        Returns:
            RelocationResult; failures are reported, not raised
        """
        options = options or RelocationOptions()
        job = RelocationJob(folder, JobDirection.RELOCATE, Path(target_root).absolute(), options)
        if not self.registry.acquire(folder.source_path, job):
            detail = f"another job is already running for {folder.source_path}"
            self._log(f"{folder.name}: {detail}", Severity.ERROR)
            return RelocationResult.failed(ErrorKind.JOB_IN_PROGRESS, detail=detail)
        try:
            return self._relocate(job, on_step, on_progress)
        finally:
            self.registry.release(folder.source_path, job)

    def _preflight_relocate(self, folder: FolderDescriptor, destination: Path) -> Optional[SafetyReport]:
        source = folder.source_path
        if not self.checks_enabled:
            self._log("[SIMULATION] Safety checks skipped and no files will be moved.",
                      Severity.WARNING)
            return None

        if not self.filesystem.is_dir(source):
            raise SafetyCheckError(ErrorKind.SOURCE_NOT_FOUND, f"{source} does not exist")
        info = self.inspector.inspect(source)
        if info.is_junction:
            raise SafetyCheckError(ErrorKind.ALREADY_A_JUNCTION,
                                   f"{source} is already a junction to {info.target}")
        try:
            destination.absolute().relative_to(source.absolute())
        except ValueError:
            pass
        else:
            raise SafetyCheckError(ErrorKind.DIRECTORY_CREATION_FAILED,
                                   f"destination {destination} lies inside {source}")

        self._log(f"Checking whether {source} is in use...", Severity.INFO)
        self._log(f"Checking free space for {destination}...", Severity.INFO)
        report = self.checker.run(source, destination.parent)
        self._log(
            f"Safety checks passed: {report.tree.file_count} files, "
            f"{format_size(report.tree.total_bytes)}, {format_size(report.free_bytes)} free",
            Severity.SUCCESS,
        )
        for warning in report.warnings:
            self._log(warning, Severity.WARNING)
        try:
            occupied = self.filesystem.is_dir(destination) and any(Path(destination).iterdir())
        except OSError as e:
            raise SafetyCheckError(ErrorKind.DIRECTORY_CREATION_FAILED,
                                   f"cannot read destination {destination}: {e}")
        if occupied:
            self._log(f"{destination} already has content; files will be merged into it",
                      Severity.WARNING)
        return report

    def _relocate(self, job: RelocationJob, on_step, on_progress) -> RelocationResult:
        folder = job.folder
        destination = job.target_root / folder.name
        self._log(f"Starting migration sequence for {folder.name}", Severity.INFO)

        self._enter(job, MoveStep.MKDIR, on_step)
        try:
            report = self._preflight_relocate(folder, destination)
        except SafetyCheckError as e:
            return self._fail(job, e.kind, str(e), on_step)

        script = build_relocation_script(folder.source_path, destination, job.options,
                                         self._new_log_path())
        result = self._run_script(job, script, on_step, on_progress)
        kind = classify_exit_code(result.exit_code)
        if kind is not None:
            return self._exit_failure(job, result, kind, on_step, folder.source_path, destination)

        # Fill in steps the script did not mark (e.g. a runner without markers).
        self._enter(job, MoveStep.REPLACE_WITH_JUNCTION, on_step)

        if job.options.verify_after_copy and report is not None:
            mismatch = self._verify_target(destination, report.tree)
            if mismatch:
                folder.mark_relocated(destination)
                return self._fail(job, ErrorKind.VERIFICATION_FAILED, mismatch, on_step)

        folder.mark_relocated(destination)
        self._enter(job, MoveStep.DONE, on_step)
        self._log(f"Junction created successfully -> {destination}", Severity.SUCCESS)
        self._log(f"Migration of {folder.name} completed successfully.", Severity.SUCCESS)
        return RelocationResult.ok(MoveStep.DONE, detail=str(destination))

    def _verify_target(self, destination: Path, expected: TreeSize) -> Optional[str]:
        """
        Compare the destination with the pre-copy source size.

        Returns:
            Mismatch description, or None if the destination holds at least
            as many files and bytes as the source did.
        """
        if not expected.complete:
            self._log("Verification skipped: source size was not fully counted", Severity.WARNING)
            return None
        actual = self.filesystem.tree_size(destination, time_budget=self.checker.size_scan_budget)
        short = (actual.file_count < expected.file_count
                 or actual.total_bytes < expected.total_bytes)
        if short and not actual.complete:
            self._log(f"Verification stopped after {self.checker.size_scan_budget:.0f}s; "
                      f"{actual.file_count} files counted at {destination} so far", Severity.WARNING)
            return None
        if actual.file_count < expected.file_count:
            return (f"file count mismatch at {destination}: "
                    f"{actual.file_count}/{expected.file_count}")
        if actual.total_bytes < expected.total_bytes:
            return (f"total bytes mismatch at {destination}: "
                    f"{actual.total_bytes}/{expected.total_bytes}")
        self._log(f"Verified {actual.file_count} files at {destination}", Severity.SUCCESS)
        return None

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(self, folder: FolderDescriptor,
                on_step: Optional[StepCallback] = None,
                on_progress: Optional[ProgressCallback] = None) -> RelocationResult:
        """
        Remove the junction at ``folder.source_path`` and move the data back.

        Refuses (NotAJunction) if the path is a real directory, and
        (BackingDataMissing) if the junction target is gone, before
        anything is removed.
        """
        job = RelocationJob(folder, JobDirection.RESTORE)
        if not self.registry.acquire(folder.source_path, job):
            detail = f"another job is already running for {folder.source_path}"
            self._log(f"{folder.name}: {detail}", Severity.ERROR)
            return RelocationResult.failed(ErrorKind.JOB_IN_PROGRESS, detail=detail)
        try:
            return self._restore(job, on_step, on_progress)
        finally:
            self.registry.release(folder.source_path, job)

    def _preflight_restore(self, folder: FolderDescriptor) -> Path:
        source = folder.source_path
        if not self.checks_enabled:
            self._log("[SIMULATION] Junction checks use recorded metadata; nothing will be moved.",
                      Severity.WARNING)
            if not folder.is_junction or folder.link_target is None:
                raise SafetyCheckError(ErrorKind.NOT_A_JUNCTION, f"{source} is not recorded as a junction")
            return folder.link_target

        info = self.inspector.inspect(source)
        if not info.is_junction:
            raise SafetyCheckError(ErrorKind.NOT_A_JUNCTION,
                                   f"{source} is not a junction; refusing to touch a real directory")
        backing = info.target
        if backing is None or not self.filesystem.is_dir(backing):
            raise SafetyCheckError(ErrorKind.BACKING_DATA_MISSING,
                                   f"junction {source} points at {backing}, which does not exist")
        self._log(f"Junction verified: {source} -> {backing}", Severity.SUCCESS)
        return Path(backing)

    def _restore(self, job: RelocationJob, on_step, on_progress) -> RelocationResult:
        folder = job.folder
        self._log(f"Starting restore sequence for {folder.name}", Severity.INFO)

        self._enter(job, MoveStep.REMOVE_JUNCTION, on_step)
        try:
            backing = self._preflight_restore(folder)
        except SafetyCheckError as e:
            return self._fail(job, e.kind, str(e), on_step)
        job.target_root = backing.parent

        script = build_restore_script(folder.source_path, backing, self._new_log_path())
        result = self._run_script(job, script, on_step, on_progress)
        kind = classify_exit_code(result.exit_code)
        if kind is not None:
            return self._exit_failure(job, result, kind, on_step, folder.source_path, backing)

        self._enter(job, MoveStep.BULK_COPY_BACK, on_step)
        folder.mark_restored()
        self._enter(job, MoveStep.DONE, on_step)
        self._log(f"Restore of {folder.name} completed; data is back at {folder.source_path}",
                  Severity.SUCCESS)
        return RelocationResult.ok(MoveStep.DONE, detail=str(folder.source_path))
