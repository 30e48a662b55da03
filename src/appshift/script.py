"""
Step scripts for the privileged part of a relocation.

A relocation (or restore) runs as one elevated invocation so the user sees a
single consent prompt. The sequence is still modelled as an ordered tuple of
StepDescriptor objects; renderers turn it into a PowerShell body, and the
in-process runner in appshift.bridge executes the same descriptors directly.

Script exit codes:
    0           success
    20          destination directory could not be created
    21          junction creation failed, data moved back to the source
    22          junction creation failed and moving the data back failed too
    23          junction could not be removed
    100 + n     bulk copy failed, n is the copy tool's exit code (n >= 8)
Any other non-zero code comes from the elevation wrapper itself.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PureWindowsPath
from typing import Dict, List, Optional, Tuple

from appshift.models import ErrorKind, JobDirection, MoveStep, RelocationOptions

EXIT_OK = 0
EXIT_MKDIR_FAILED = 20
EXIT_LINK_FAILED = 21
EXIT_ROLLBACK_FAILED = 22
EXIT_UNLINK_FAILED = 23
EXIT_COPY_BASE = 100

# robocopy: 0-7 are degrees of success, 8 and above mean at least one failure.
COPY_FAILURE_THRESHOLD = 8

ROBOCOPY_BASE_FLAGS = ("/MOVE", "/E", "/COPYALL", "/NP", "/BYTES", "/FP", "/NDL", "/NJH", "/NJS")


class StepAction(str, Enum):
    MAKE_DIRECTORY = "make_directory"
    BULK_MOVE = "bulk_move"
    COMPRESS = "compress"
    REMOVE_EMPTY_DIRECTORY = "remove_empty_directory"
    CREATE_JUNCTION = "create_junction"
    REMOVE_JUNCTION = "remove_junction"


@dataclass(frozen=True)
class StepDescriptor:
    """
    One operation in a step script.

    Attributes:
        action: What to do
        step: The job step this operation belongs to
        source: Path operated on (link path for junction actions)
        destination: Second path, if the action has one
        flags: Extra copy tool flags (bulk moves only)
        required: Whether a failure aborts the script
    """
    action: StepAction
    step: MoveStep
    source: Path
    destination: Optional[Path] = None
    flags: Tuple[str, ...] = ()
    required: bool = True

    def describe(self) -> str:
        """Equivalent shell command, for logs and dry runs."""
        src, dst = _quote(self.source), _quote(self.destination) if self.destination else ""
        if self.action is StepAction.MAKE_DIRECTORY:
            return f"mkdir {src}"
        if self.action is StepAction.BULK_MOVE:
            return " ".join(["robocopy", src, dst, *ROBOCOPY_BASE_FLAGS, *self.flags])
        if self.action is StepAction.COMPRESS:
            return f"compact /c /s:{src} /i /q"
        if self.action is StepAction.REMOVE_EMPTY_DIRECTORY:
            return f"rmdir {src}"
        if self.action is StepAction.CREATE_JUNCTION:
            return f"mklink /J {src} {dst}"
        if self.action is StepAction.REMOVE_JUNCTION:
            return f"rmdir {src} (junction only)"
        raise ValueError(f"unknown action {self.action}")


@dataclass(frozen=True)
class StepScript:
    direction: JobDirection
    steps: Tuple[StepDescriptor, ...]
    log_path: Path
    metadata: Dict[str, str] = field(default_factory=dict)

    def job_steps(self) -> List[MoveStep]:
        """Distinct job steps covered by the script, in order."""
        seen: List[MoveStep] = []
        for descriptor in self.steps:
            if descriptor.step not in seen:
                seen.append(descriptor.step)
        return seen


def _quote(path: Optional[Path]) -> str:
    return f'"{path}"' if path is not None else ""


def copy_flags(options: RelocationOptions) -> Tuple[str, ...]:
    flags = []
    if options.verify_after_copy:
        flags.append("/V")
    if options.purge_source:
        flags.append("/PURGE")
    return tuple(flags)


def build_relocation_script(source: Path, destination: Path, options: RelocationOptions,
                            log_path: Path) -> StepScript:
    """Create dir, move the tree, remove the emptied source root, link it back."""
    source, destination = Path(source), Path(destination)
    steps = [
        StepDescriptor(StepAction.MAKE_DIRECTORY, MoveStep.MKDIR, destination),
        StepDescriptor(StepAction.BULK_MOVE, MoveStep.BULK_COPY, source, destination,
                       flags=copy_flags(options)),
    ]
    if options.enable_compression:
        steps.append(StepDescriptor(StepAction.COMPRESS, MoveStep.BULK_COPY, destination,
                                    required=False))
    steps += [
        # The link cannot be created while anything occupies the source path.
        StepDescriptor(StepAction.REMOVE_EMPTY_DIRECTORY, MoveStep.REPLACE_WITH_JUNCTION, source,
                       destination),
        StepDescriptor(StepAction.CREATE_JUNCTION, MoveStep.REPLACE_WITH_JUNCTION, source,
                       destination),
    ]
    return StepScript(JobDirection.RELOCATE, tuple(steps), Path(log_path),
                      {"source": str(source), "destination": str(destination)})


def build_restore_script(source: Path, backing: Path, log_path: Path) -> StepScript:
    """Remove the junction, move the backing data home, drop the emptied backing dir."""
    source, backing = Path(source), Path(backing)
    steps = (
        StepDescriptor(StepAction.REMOVE_JUNCTION, MoveStep.REMOVE_JUNCTION, source, backing),
        StepDescriptor(StepAction.BULK_MOVE, MoveStep.BULK_COPY_BACK, backing, source),
        StepDescriptor(StepAction.REMOVE_EMPTY_DIRECTORY, MoveStep.BULK_COPY_BACK, backing,
                       required=False),
    )
    return StepScript(JobDirection.RESTORE, steps, Path(log_path),
                      {"source": str(source), "backing": str(backing)})


def classify_exit_code(exit_code: int) -> Optional[ErrorKind]:
    """Map a script exit code to a failure kind (None for success)."""
    if exit_code == EXIT_OK:
        return None
    if exit_code == EXIT_MKDIR_FAILED:
        return ErrorKind.DIRECTORY_CREATION_FAILED
    if exit_code == EXIT_LINK_FAILED:
        return ErrorKind.LINK_CREATION_FAILED
    if exit_code == EXIT_ROLLBACK_FAILED:
        return ErrorKind.ROLLBACK_FAILED
    if exit_code == EXIT_UNLINK_FAILED:
        return ErrorKind.JUNCTION_REMOVAL_FAILED
    if EXIT_COPY_BASE + COPY_FAILURE_THRESHOLD <= exit_code < EXIT_COPY_BASE + 256:
        return ErrorKind.COPY_FAILED
    return ErrorKind.ELEVATION_DECLINED_OR_FAILED


def copy_tool_exit_code(exit_code: int) -> Optional[int]:
    """The copy tool's own exit code, if the script exit code carries one."""
    if classify_exit_code(exit_code) is ErrorKind.COPY_FAILED:
        return exit_code - EXIT_COPY_BASE
    return None


# ---------------------------------------------------------------------------
# PowerShell rendering
# ---------------------------------------------------------------------------

def ps_literal(value) -> str:
    """Single-quoted PowerShell literal; only ' needs escaping inside one."""
    return "'" + str(value).replace("'", "''") + "'"


def _win(path: Path) -> str:
    text = str(PureWindowsPath(path))
    # A trailing backslash would escape the closing quote in native argv parsing.
    if len(text) > 3:
        text = text.rstrip("\\")
    return text


def _robocopy_call(src_var: str, dst_var: str, flags) -> str:
    args = " ".join([*ROBOCOPY_BASE_FLAGS, *flags])
    return f'& robocopy {src_var} {dst_var} {args} "/LOG+:$log" | Out-Null'


def _render_descriptor(d: StepDescriptor) -> List[str]:
    src = ps_literal(_win(d.source))
    dst = ps_literal(_win(d.destination)) if d.destination is not None else "$null"
    lines = [f"$src = {src}", f"$dst = {dst}"]

    if d.action is StepAction.MAKE_DIRECTORY:
        lines += [
            "try {",
            "    [System.IO.Directory]::CreateDirectory($src) | Out-Null",
            "} catch {",
            "    Write-Output \"mkdir failed: $($_.Exception.Message)\"",
            f"    exit {EXIT_MKDIR_FAILED}",
            "}",
        ]
    elif d.action is StepAction.BULK_MOVE:
        lines += [
            _robocopy_call("$src", "$dst", d.flags),
            "$rc = $LASTEXITCODE",
            f"if ($rc -ge {COPY_FAILURE_THRESHOLD}) {{",
            "    Write-Output \"robocopy failed with code $rc\"",
            f"    exit ({EXIT_COPY_BASE} + $rc)",
            "}",
        ]
    elif d.action is StepAction.COMPRESS:
        lines += [
            "& compact /c \"/s:$src\" /i /q | Out-Null",
            "if ($LASTEXITCODE -ne 0) { Write-Output \"compact exited with $LASTEXITCODE\" }",
        ]
    elif d.action is StepAction.REMOVE_EMPTY_DIRECTORY:
        if d.required:
            # Source root after the move; a failure here means no junction, so undo the move.
            lines += [
                "try {",
                "    if (Test-Path -LiteralPath $src) { [System.IO.Directory]::Delete($src, $false) }",
                "} catch {",
                "    Write-Output \"source cleanup failed: $($_.Exception.Message)\"",
                *_render_rollback(),
                "}",
            ]
        else:
            lines += [
                "try {",
                "    if (Test-Path -LiteralPath $src) { [System.IO.Directory]::Delete($src, $false) }",
                "} catch {",
                "    Write-Output \"left non-empty directory in place: $src\"",
                "}",
            ]
    elif d.action is StepAction.CREATE_JUNCTION:
        lines += [
            "try {",
            "    & cmd.exe /c mklink /J \"$src\" \"$dst\" | Out-Null",
            "    if ($LASTEXITCODE -ne 0) { throw \"mklink exited with $LASTEXITCODE\" }",
            "} catch {",
            "    Write-Output \"junction creation failed: $($_.Exception.Message)\"",
            *_render_rollback(),
            "}",
        ]
    elif d.action is StepAction.REMOVE_JUNCTION:
        lines += [
            "try {",
            "    [System.IO.Directory]::Delete($src, $false)",
            "} catch {",
            "    Write-Output \"junction removal failed: $($_.Exception.Message)\"",
            f"    exit {EXIT_UNLINK_FAILED}",
            "}",
        ]
    else:
        raise ValueError(f"unknown action {d.action}")
    return lines


def _render_rollback() -> List[str]:
    return [
        "    & robocopy $dst $src /MOVE /E /COPYALL /NP /NFL /NDL /NJH /NJS | Out-Null",
        f"    if ($LASTEXITCODE -ge {COPY_FAILURE_THRESHOLD}) {{ exit {EXIT_ROLLBACK_FAILED} }}",
        f"    exit {EXIT_LINK_FAILED}",
    ]


def render_powershell(script: StepScript) -> str:
    """Render a step script as a PowerShell body for -EncodedCommand."""
    lines = [
        "$ErrorActionPreference = 'Stop'",
        f"$log = {ps_literal(_win(script.log_path))}",
        "function Write-Step($name) { Add-Content -LiteralPath $log -Value \"##STEP $name\" -Encoding ASCII }",
    ]
    current: Optional[MoveStep] = None
    for descriptor in script.steps:
        if descriptor.step is not current:
            current = descriptor.step
            lines += ["", f"Write-Step {ps_literal(current.value)}"]
        lines += _render_descriptor(descriptor)
    lines += ["", f"exit {EXIT_OK}"]
    return "\n".join(lines) + "\n"
