"""
End-to-end tests for RelocationEngine.

Relocations run through LocalElevator against real directories under
tmp_path; free space and lock state come from a scripted filesystem so the
gates can be exercised without filling a disk.
"""

import sys
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from appshift.bridge import ElevatedResult, Elevator, LocalElevator
from appshift.config import ExecutionMode
from appshift.discovery import describe_folder
from appshift.engine import RelocationEngine
from appshift.fs_utils import LocalFileSystem, TreeSize
from appshift.models import (
    CopyProgress,
    ErrorKind,
    FolderDescriptor,
    JobDirection,
    MoveStep,
    RelocationJob,
    RelocationOptions,
    Severity,
)
from appshift.reparse import inspect_path
from appshift.telemetry import format_step_marker

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses directory symlinks")

MB = 1024 * 1024
GB = 1024 * MB


class FakeFileSystem(LocalFileSystem):

    def __init__(self, free=GB, locked=False, short_destination=False):
        self.free = free
        self.locked = locked
        self.short_destination = short_destination
        self.sized = []

    def probe_write(self, directory):
        if self.locked:
            raise PermissionError(13, "used by another process", str(directory))

    def free_space(self, path):
        return self.free

    def tree_size(self, root, time_budget=None):
        self.sized.append(Path(root))
        tree = super().tree_size(root, time_budget)
        if self.short_destination and len(self.sized) > 1:
            return TreeSize(tree.total_bytes, tree.file_count - 1)
        return tree


class RecordingElevator(Elevator):
    """Writes the given step markers, returns a fixed exit code."""

    name = "recording"

    def __init__(self, exit_code=0, steps=()):
        self.exit_code = exit_code
        self.steps = steps
        self.scripts = []

    def run(self, script):
        self.scripts.append(script)
        with open(script.log_path, "a") as log:
            for step in self.steps:
                log.write(format_step_marker(step))
        return ElevatedResult(self.exit_code, "", "")


class Recorder:
    """Collects step, progress and log events in arrival order."""

    def __init__(self):
        self.events = []
        self.logs = []

    def on_step(self, step):
        self.events.append(("step", step))

    def on_progress(self, progress):
        self.events.append(("progress", progress))

    def log(self, message, severity):
        self.logs.append((severity, message))

    @property
    def steps(self):
        return [e for kind, e in self.events if kind == "step"]

    @property
    def progress(self):
        return [e for kind, e in self.events if kind == "progress"]


def make_app(root: Path, sizes=(10 * MB, 15 * MB, 25 * MB)) -> Path:
    """A folder with sparse files adding up to ``sum(sizes)``."""
    app = root / "AppData" / "Roaming" / "MyApp"
    (app / "cache").mkdir(parents=True)
    for i, size in enumerate(sizes):
        sub = app / "cache" if i else app
        with open(sub / f"file{i}.dat", "wb") as f:
            f.truncate(size)
    return app


def files_under(root: Path):
    return sorted(str(p.relative_to(root)) for p in root.rglob("*") if p.is_file())


def make_engine(tmp_path, recorder, elevator=None, filesystem=None, mode=ExecutionMode.LOCAL):
    return RelocationEngine(
        elevator=elevator or LocalElevator(),
        filesystem=filesystem or FakeFileSystem(),
        mode=mode,
        log=recorder.log,
        poll_interval=0.01,
        log_dir=tmp_path / "logs",
    )


class TestRelocate:

    def test_relocate_leaves_junction_to_target(self, tmp_path):
        app = make_app(tmp_path)
        expected = files_under(app)
        recorder = Recorder()
        engine = make_engine(tmp_path, recorder)
        folder = describe_folder(app)

        result = engine.relocate(folder, tmp_path / "D", on_step=recorder.on_step,
                                 on_progress=recorder.on_progress)

        assert result.success, result.detail
        info = inspect_path(app)
        assert info.is_junction
        assert info.target == tmp_path / "D" / "MyApp"
        assert files_under(tmp_path / "D" / "MyApp") == expected
        assert folder.is_junction
        assert folder.link_target == tmp_path / "D" / "MyApp"
        assert recorder.steps == [MoveStep.MKDIR, MoveStep.BULK_COPY,
                                  MoveStep.REPLACE_WITH_JUNCTION, MoveStep.DONE]

    def test_progress_is_monotonic_and_stops_at_terminal(self, tmp_path):
        app = make_app(tmp_path)
        recorder = Recorder()
        engine = make_engine(tmp_path, recorder)

        engine.relocate(describe_folder(app), tmp_path / "D", on_step=recorder.on_step,
                        on_progress=recorder.on_progress)

        counts = [p.files_copied for p in recorder.progress]
        assert counts, "no progress reported"
        assert counts == sorted(counts)
        assert counts[-1] == 3
        done_at = recorder.events.index(("step", MoveStep.DONE))
        assert all(kind == "step" for kind, _ in recorder.events[done_at:])

    def test_commands_and_exit_code_are_logged(self, tmp_path):
        app = make_app(tmp_path)
        recorder = Recorder()
        make_engine(tmp_path, recorder).relocate(describe_folder(app), tmp_path / "D")

        commands = [m for s, m in recorder.logs if s is Severity.COMMAND]
        assert any(m.startswith("robocopy") for m in commands)
        assert any("exited with code 0" in m for s, m in recorder.logs)
        assert recorder.logs[-1][0] is Severity.SUCCESS

    def test_transfer_log_is_removed(self, tmp_path):
        app = make_app(tmp_path)
        make_engine(tmp_path, Recorder()).relocate(describe_folder(app), tmp_path / "D")
        assert list((tmp_path / "logs").iterdir()) == []

    def test_insufficient_space_touches_nothing(self, tmp_path):
        app = make_app(tmp_path)
        expected = files_under(app)
        recorder = Recorder()
        elevator = RecordingElevator()
        engine = make_engine(tmp_path, recorder, elevator=elevator,
                             filesystem=FakeFileSystem(free=10 * MB))

        result = engine.relocate(describe_folder(app), tmp_path / "D", on_step=recorder.on_step)

        assert not result.success
        assert result.failure is ErrorKind.INSUFFICIENT_SPACE
        assert elevator.scripts == []
        assert not (tmp_path / "D").exists()
        assert files_under(app) == expected
        assert recorder.steps[-1] is MoveStep.FAILED

    def test_locked_folder_touches_nothing(self, tmp_path):
        app = make_app(tmp_path)
        elevator = RecordingElevator()
        engine = make_engine(tmp_path, Recorder(), elevator=elevator,
                             filesystem=FakeFileSystem(locked=True))

        result = engine.relocate(describe_folder(app), tmp_path / "D")

        assert result.failure is ErrorKind.FOLDER_LOCKED
        assert result.furthest_step is MoveStep.MKDIR
        assert elevator.scripts == []
        assert not (tmp_path / "D").exists()

    def test_missing_source(self, tmp_path):
        folder = FolderDescriptor(id="Gone", name="Gone", source_path=tmp_path / "Gone")
        result = make_engine(tmp_path, Recorder()).relocate(folder, tmp_path / "D")
        assert result.failure is ErrorKind.SOURCE_NOT_FOUND

    def test_already_relocated(self, tmp_path):
        app = make_app(tmp_path)
        engine = make_engine(tmp_path, Recorder())
        folder = describe_folder(app)
        assert engine.relocate(folder, tmp_path / "D").success

        again = engine.relocate(describe_folder(app), tmp_path / "E")
        assert again.failure is ErrorKind.ALREADY_A_JUNCTION
        assert not (tmp_path / "E").exists()

    def test_destination_inside_source_refused(self, tmp_path):
        app = make_app(tmp_path)
        result = make_engine(tmp_path, Recorder()).relocate(describe_folder(app), app / "nested")
        assert result.failure is ErrorKind.DIRECTORY_CREATION_FAILED
        assert not (app / "nested").exists()

    @pytest.mark.parametrize("exit_code,kind,reported", [
        (1, ErrorKind.ELEVATION_DECLINED_OR_FAILED, 1),
        (20, ErrorKind.DIRECTORY_CREATION_FAILED, 20),
        (21, ErrorKind.LINK_CREATION_FAILED, 21),
        (22, ErrorKind.ROLLBACK_FAILED, 22),
        (108, ErrorKind.COPY_FAILED, 8),
    ])
    def test_script_exit_codes(self, tmp_path, exit_code, kind, reported):
        app = make_app(tmp_path)
        folder = describe_folder(app)
        elevator = RecordingElevator(exit_code=exit_code, steps=(MoveStep.MKDIR, MoveStep.BULK_COPY))
        result = make_engine(tmp_path, Recorder(), elevator=elevator).relocate(folder, tmp_path / "D")

        assert result.failure is kind
        assert result.exit_code == reported
        assert result.furthest_step is MoveStep.BULK_COPY
        assert not folder.is_junction

    def test_verification_mismatch(self, tmp_path):
        app = make_app(tmp_path)
        folder = describe_folder(app)
        engine = make_engine(tmp_path, Recorder(),
                             filesystem=FakeFileSystem(short_destination=True))

        result = engine.relocate(folder, tmp_path / "D", RelocationOptions(verify_after_copy=True))

        assert result.failure is ErrorKind.VERIFICATION_FAILED
        assert result.furthest_step is MoveStep.REPLACE_WITH_JUNCTION
        # The junction exists, so the descriptor reflects it.
        assert folder.is_junction
        assert inspect_path(app).is_junction

    def test_verification_can_be_disabled(self, tmp_path):
        app = make_app(tmp_path)
        engine = make_engine(tmp_path, Recorder(),
                             filesystem=FakeFileSystem(short_destination=True))
        result = engine.relocate(describe_folder(app), tmp_path / "D",
                                 RelocationOptions(verify_after_copy=False))
        assert result.success


class TestRestore:

    def test_round_trip_restores_tree(self, tmp_path):
        app = make_app(tmp_path)
        expected = files_under(app)
        recorder = Recorder()
        engine = make_engine(tmp_path, recorder)
        folder = describe_folder(app)
        assert engine.relocate(folder, tmp_path / "D").success

        result = engine.restore(folder, on_step=recorder.on_step)

        assert result.success, result.detail
        assert not inspect_path(app).is_junction
        assert files_under(app) == expected
        assert not (tmp_path / "D" / "MyApp").exists()
        assert not folder.is_junction
        assert folder.link_target is None
        assert recorder.steps[-3:] == [MoveStep.REMOVE_JUNCTION, MoveStep.BULK_COPY_BACK,
                                       MoveStep.DONE]

    def test_real_directory_is_refused(self, tmp_path):
        app = make_app(tmp_path)
        expected = files_under(app)
        elevator = RecordingElevator()
        engine = make_engine(tmp_path, Recorder(), elevator=elevator)

        result = engine.restore(describe_folder(app))

        assert result.failure is ErrorKind.NOT_A_JUNCTION
        assert elevator.scripts == []
        assert files_under(app) == expected

    def test_missing_backing_data_is_refused(self, tmp_path):
        link = tmp_path / "AppData" / "Roaming" / "MyApp"
        link.parent.mkdir(parents=True)
        link.symlink_to(tmp_path / "D" / "MyApp", target_is_directory=True)
        elevator = RecordingElevator()

        result = make_engine(tmp_path, Recorder(), elevator=elevator).restore(describe_folder(link))

        assert result.failure is ErrorKind.BACKING_DATA_MISSING
        assert elevator.scripts == []
        assert link.is_symlink()

    def test_copy_back_failure(self, tmp_path):
        backing = tmp_path / "D" / "MyApp"
        backing.mkdir(parents=True)
        link = tmp_path / "MyApp"
        link.symlink_to(backing, target_is_directory=True)
        elevator = RecordingElevator(exit_code=116, steps=(MoveStep.REMOVE_JUNCTION,
                                                           MoveStep.BULK_COPY_BACK))

        result = make_engine(tmp_path, Recorder(), elevator=elevator).restore(describe_folder(link))

        assert result.failure is ErrorKind.COPY_FAILED
        assert result.exit_code == 16
        assert result.furthest_step is MoveStep.BULK_COPY_BACK


class TestJobRegistry:

    def test_second_job_for_same_path_is_rejected(self, tmp_path):
        app = make_app(tmp_path)
        started = threading.Event()
        release = threading.Event()

        class BlockingElevator(Elevator):
            name = "blocking"

            def run(self, script):
                started.set()
                release.wait(10)
                return ElevatedResult(0)

        engine = make_engine(tmp_path, Recorder(), elevator=BlockingElevator(),
                             mode=ExecutionMode.LOCAL)
        folder = describe_folder(app)
        results = []
        worker = threading.Thread(
            target=lambda: results.append(engine.relocate(folder, tmp_path / "D")))
        worker.start()
        try:
            assert started.wait(10)
            assert engine.active_job(folder) is not None
            second = engine.restore(describe_folder(app))
            assert second.failure is ErrorKind.JOB_IN_PROGRESS
        finally:
            release.set()
            worker.join(10)
        assert engine.active_job(folder) is None

    def test_different_paths_do_not_block(self, tmp_path):
        engine = make_engine(tmp_path, Recorder())
        first = make_app(tmp_path / "one")
        second = make_app(tmp_path / "two")
        assert engine.relocate(describe_folder(first), tmp_path / "D1").success
        assert engine.relocate(describe_folder(second), tmp_path / "D2").success


class TestSimulateMode:

    def test_relocate_changes_nothing_on_disk(self, tmp_path):
        app = make_app(tmp_path)
        expected = files_under(app)
        recorder = Recorder()
        engine = RelocationEngine(mode=ExecutionMode.SIMULATE, log=recorder.log,
                                  poll_interval=0.01, log_dir=tmp_path / "logs")
        folder = describe_folder(app)

        result = engine.relocate(folder, tmp_path / "D", on_step=recorder.on_step)

        assert result.success
        assert recorder.steps[-1] is MoveStep.DONE
        assert any("[SIMULATION]" in m for s, m in recorder.logs if s is Severity.WARNING)
        assert not inspect_path(app).is_junction
        assert files_under(app) == expected
        assert not (tmp_path / "D").exists()
        assert folder.is_junction

        restored = engine.restore(folder, on_step=recorder.on_step)
        assert restored.success
        assert not folder.is_junction


def test_plan_does_not_execute(tmp_path):
    app = make_app(tmp_path)
    engine = make_engine(tmp_path, Recorder())
    script = engine.plan_relocation(describe_folder(app), tmp_path / "D")
    assert script.metadata["destination"] == str(tmp_path / "D" / "MyApp")
    assert not (tmp_path / "D").exists()


def test_progress_sink_ignores_regressions(tmp_path):
    engine = make_engine(tmp_path, Recorder())
    job = RelocationJob(FolderDescriptor(id="a", name="a", source_path=tmp_path), JobDirection.RELOCATE)
    seen = []
    sink = engine._progress_sink(job, seen.append)
    sink(CopyProgress(2, "b"))
    sink(CopyProgress(1, "a"))
    job.fail()
    sink(CopyProgress(3, "c"))
    assert [p.files_copied for p in seen] == [2]


class TestRelativePaths:

    def test_relative_source_and_target_round_trip(self, tmp_path, monkeypatch):
        make_app(tmp_path)
        expected = files_under(tmp_path / "AppData" / "Roaming" / "MyApp")
        monkeypatch.chdir(tmp_path)
        engine = make_engine(tmp_path, Recorder())
        folder = describe_folder(Path("AppData") / "Roaming" / "MyApp")

        result = engine.relocate(folder, Path("D"))

        assert result.success, result.detail
        app = tmp_path / "AppData" / "Roaming" / "MyApp"
        info = inspect_path(app)
        assert info.target == tmp_path / "D" / "MyApp"
        assert files_under(app) == expected

        restored = engine.restore(describe_folder(Path("AppData") / "Roaming" / "MyApp"))
        assert restored.success, restored.detail
        assert not app.is_symlink()
        assert files_under(app) == expected

    def test_plan_uses_absolute_paths(self, tmp_path, monkeypatch):
        make_app(tmp_path)
        monkeypatch.chdir(tmp_path)
        engine = make_engine(tmp_path, Recorder())
        script = engine.plan_relocation(describe_folder("AppData/Roaming/MyApp"), Path("D"))
        assert script.metadata["source"] == str(tmp_path / "AppData" / "Roaming" / "MyApp")
        assert script.metadata["destination"] == str(tmp_path / "D" / "MyApp")


class TestTargetVolumeErrors:

    def test_unavailable_volume_is_a_typed_failure(self, tmp_path):
        class NoVolume(FakeFileSystem):
            def free_space(self, path):
                raise FileNotFoundError(2, "The system cannot find the path specified", str(path))

        app = make_app(tmp_path)
        elevator = RecordingElevator()
        engine = make_engine(tmp_path, Recorder(), elevator=elevator, filesystem=NoVolume())

        result = engine.relocate(describe_folder(app), tmp_path / "Z")

        assert result.failure is ErrorKind.DIRECTORY_CREATION_FAILED
        assert "not available" in result.detail
        assert elevator.scripts == []

    def test_unreadable_destination_is_a_typed_failure(self, tmp_path):
        app = make_app(tmp_path)
        (tmp_path / "D" / "MyApp").mkdir(parents=True)
        elevator = RecordingElevator()
        engine = make_engine(tmp_path, Recorder(), elevator=elevator)

        with patch.object(Path, "iterdir", side_effect=PermissionError(13, "Access is denied")):
            result = engine.relocate(describe_folder(app), tmp_path / "D")

        assert result.failure is ErrorKind.DIRECTORY_CREATION_FAILED
        assert elevator.scripts == []


class TestVerificationBudget:

    def test_destination_walk_is_time_bounded(self, tmp_path):
        budgets = []

        class SlowDestination(FakeFileSystem):
            def tree_size(self, root, time_budget=None):
                budgets.append(time_budget)
                tree = super().tree_size(root, time_budget)
                if len(budgets) > 1:
                    return TreeSize(0, 0, complete=False)
                return tree

        app = make_app(tmp_path)
        recorder = Recorder()
        engine = RelocationEngine(elevator=LocalElevator(), filesystem=SlowDestination(),
                                  log=recorder.log, poll_interval=0.01,
                                  size_scan_budget=7.0, log_dir=tmp_path / "logs")

        result = engine.relocate(describe_folder(app), tmp_path / "D",
                                 RelocationOptions(verify_after_copy=True))

        assert result.success, result.detail
        assert budgets == [7.0, 7.0]
        assert any("Verification stopped" in m for s, m in recorder.logs if s is Severity.WARNING)
