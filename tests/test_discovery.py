"""Tests for candidate folder discovery."""

import sys

import pytest

from appshift.discovery import compute_size_label, describe_folder, scan_folders
from appshift.fs_utils import LocalFileSystem, TreeSize
from appshift.models import UNKNOWN_SIZE


@pytest.fixture
def roaming(tmp_path):
    root = tmp_path / "Roaming"
    for name in ("zoom", "Code", "npm-cache"):
        (root / name).mkdir(parents=True)
    (root / "desktop.ini").write_text("[.ShellClassInfo]")
    return root


def test_lists_directories_sorted_case_insensitively(roaming):
    names = [f.name for f in scan_folders(roaming)]
    assert names == ["Code", "npm-cache", "zoom"]


def test_limit(roaming):
    assert len(scan_folders(roaming, limit=2)) == 2


def test_missing_root_gives_empty_list(tmp_path):
    assert scan_folders(tmp_path / "nope") == []


@pytest.mark.skipif(sys.platform == "win32", reason="uses directory symlinks")
def test_relocated_and_broken_links_are_listed(roaming, tmp_path):
    backing = tmp_path / "D" / "Slack"
    backing.mkdir(parents=True)
    (roaming / "Slack").symlink_to(backing, target_is_directory=True)
    (roaming / "Broken").symlink_to(tmp_path / "D" / "gone", target_is_directory=True)

    folders = {f.name: f for f in scan_folders(roaming)}
    assert folders["Slack"].is_junction
    assert folders["Slack"].link_target == backing
    assert folders["Broken"].is_junction
    assert not folders["Code"].is_junction


def test_describe_folder_defaults(roaming):
    folder = describe_folder(roaming / "Code")
    assert folder.id == "Code"
    assert folder.size_label == UNKNOWN_SIZE
    assert folder.link_target is None


def test_size_label(roaming):
    (roaming / "Code" / "state.db").write_bytes(b"x" * 2048)
    folder = describe_folder(roaming / "Code")
    assert compute_size_label(folder) == "2.0 KB"
    assert folder.size_label == "2.0 KB"


def test_size_label_marks_partial_walk(roaming):
    class SlowFileSystem(LocalFileSystem):
        def tree_size(self, root, time_budget=None):
            return TreeSize(512, 1, complete=False)

    folder = describe_folder(roaming / "Code")
    assert compute_size_label(folder, SlowFileSystem(), time_budget=0.1) == ">512 B"
