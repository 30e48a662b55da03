"""
Data model for relocation jobs.

A FolderDescriptor describes one candidate folder. A RelocationJob tracks a
single relocate or restore run against one descriptor and enforces the step
ordering of its sequence.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

UNKNOWN_SIZE = "Unknown"


class MoveStep(str, Enum):
    IDLE = "IDLE"
    MKDIR = "MKDIR"
    BULK_COPY = "BULK_COPY"
    REPLACE_WITH_JUNCTION = "REPLACE_WITH_JUNCTION"
    REMOVE_JUNCTION = "REMOVE_JUNCTION"
    BULK_COPY_BACK = "BULK_COPY_BACK"
    DONE = "DONE"
    FAILED = "FAILED"


FORWARD_SEQUENCE: Tuple[MoveStep, ...] = (
    MoveStep.IDLE,
    MoveStep.MKDIR,
    MoveStep.BULK_COPY,
    MoveStep.REPLACE_WITH_JUNCTION,
    MoveStep.DONE,
)

REVERSE_SEQUENCE: Tuple[MoveStep, ...] = (
    MoveStep.IDLE,
    MoveStep.REMOVE_JUNCTION,
    MoveStep.BULK_COPY_BACK,
    MoveStep.DONE,
)

TERMINAL_STEPS = frozenset({MoveStep.DONE, MoveStep.FAILED})


class JobDirection(str, Enum):
    RELOCATE = "relocate"
    RESTORE = "restore"

    @property
    def sequence(self) -> Tuple[MoveStep, ...]:
        return FORWARD_SEQUENCE if self is JobDirection.RELOCATE else REVERSE_SEQUENCE


class ErrorKind(str, Enum):
    FOLDER_LOCKED = "FolderLocked"
    INSUFFICIENT_SPACE = "InsufficientSpace"
    NOT_A_JUNCTION = "NotAJunction"
    BACKING_DATA_MISSING = "BackingDataMissing"
    COPY_FAILED = "CopyFailed"
    LINK_CREATION_FAILED = "LinkCreationFailed"
    ELEVATION_DECLINED_OR_FAILED = "ElevationDeclinedOrFailed"
    SOURCE_NOT_FOUND = "SourceNotFound"
    ALREADY_A_JUNCTION = "AlreadyAJunction"
    DIRECTORY_CREATION_FAILED = "DirectoryCreationFailed"
    JUNCTION_REMOVAL_FAILED = "JunctionRemovalFailed"
    VERIFICATION_FAILED = "VerificationFailed"
    JOB_IN_PROGRESS = "JobInProgress"
    ROLLBACK_FAILED = "RollbackFailed"


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    COMMAND = "command"


@dataclass
class FolderDescriptor:
    """
    A folder that can be relocated.

    Attributes:
        id: Unique identifier (the folder name for discovered entries)
        name: Display label, also the directory name used under the target root
        source_path: Path consumers expect the data at
        size_label: Human-readable size, "Unknown" until computed
        is_junction: True if source_path is currently a reparse point
        link_target: Where the junction resolves to (only set if is_junction)
    """
    id: str
    name: str
    source_path: Path
    size_label: str = UNKNOWN_SIZE
    is_junction: bool = False
    link_target: Optional[Path] = None

    def __post_init__(self):
        # Junction targets are resolved by the OS, not against our cwd.
        self.source_path = Path(self.source_path).absolute()
        if self.link_target is not None:
            self.link_target = Path(self.link_target).absolute()

    def mark_relocated(self, target: Path) -> None:
        self.is_junction = True
        self.link_target = Path(target).absolute()

    def mark_restored(self) -> None:
        self.is_junction = False
        self.link_target = None


@dataclass(frozen=True)
class RelocationOptions:
    verify_after_copy: bool = True
    purge_source: bool = False
    enable_compression: bool = False


@dataclass(frozen=True)
class CopyProgress:
    files_copied: int
    current_file: str


@dataclass
class RelocationResult:
    """Outcome of one relocate or restore call."""
    success: bool
    failure: Optional[ErrorKind] = None
    exit_code: Optional[int] = None
    furthest_step: MoveStep = MoveStep.IDLE
    detail: str = ""

    @classmethod
    def ok(cls, furthest_step: MoveStep = MoveStep.DONE, detail: str = "") -> "RelocationResult":
        return cls(success=True, furthest_step=furthest_step, detail=detail)

    @classmethod
    def failed(cls, kind: ErrorKind, detail: str = "", exit_code: Optional[int] = None,
               furthest_step: MoveStep = MoveStep.IDLE) -> "RelocationResult":
        return cls(success=False, failure=kind, exit_code=exit_code,
                   furthest_step=furthest_step, detail=detail)


@dataclass
class RelocationJob:
    """
    One in-flight relocate or restore operation.

    current_step only moves forward through the direction's sequence, one
    step at a time. FAILED is reachable from any non-terminal step. Terminal
    jobs do not change again.
    """
    folder: FolderDescriptor
    direction: JobDirection
    target_root: Optional[Path] = None
    options: RelocationOptions = field(default_factory=RelocationOptions)
    current_step: MoveStep = MoveStep.IDLE
    progress: Optional[CopyProgress] = None
    started_at: datetime = field(default_factory=datetime.now)
    furthest_step: MoveStep = MoveStep.IDLE

    @property
    def sequence(self) -> Tuple[MoveStep, ...]:
        return self.direction.sequence

    @property
    def is_terminal(self) -> bool:
        return self.current_step in TERMINAL_STEPS

    def advance(self, step: MoveStep) -> None:
        """Move to the step immediately after the current one."""
        from appshift.exceptions import InvalidTransition

        if self.is_terminal:
            raise InvalidTransition(f"job already {self.current_step.value}")
        index = self.sequence.index(self.current_step)
        expected = self.sequence[index + 1]
        if step is not expected:
            raise InvalidTransition(
                f"{self.direction.value}: cannot go {self.current_step.value} -> {step.value} "
                f"(next is {expected.value})"
            )
        self.current_step = step
        self.furthest_step = step

    def advance_to(self, step: MoveStep) -> List[MoveStep]:
        """
        Walk forward to ``step``, entering every intermediate step in order.

        Returns:
            Steps entered, in order. Empty if the job is already at ``step``.
        """
        from appshift.exceptions import InvalidTransition

        if step not in self.sequence:
            raise InvalidTransition(f"{step.value} is not part of {self.direction.value}")
        if step is self.current_step:
            return []
        if self.sequence.index(step) < self.sequence.index(self.current_step):
            raise InvalidTransition(
                f"{self.direction.value}: cannot regress {self.current_step.value} -> {step.value}"
            )
        entered = []
        while self.current_step is not step:
            next_step = self.sequence[self.sequence.index(self.current_step) + 1]
            self.advance(next_step)
            entered.append(next_step)
        return entered

    def fail(self) -> None:
        from appshift.exceptions import InvalidTransition

        if self.is_terminal:
            raise InvalidTransition(f"job already {self.current_step.value}")
        self.current_step = MoveStep.FAILED
