"""Tests for junction inspection (directory symlinks stand in for junctions off Windows)."""

import os
import sys

import pytest

from appshift.reparse import ReparseInspector, inspect_path

pytestmark = pytest.mark.skipif(sys.platform == "win32",
                                reason="creating symlinks needs privileges on Windows")


def test_plain_directory_is_not_a_junction(tmp_path):
    info = inspect_path(tmp_path)
    assert not info.is_junction
    assert info.target is None


def test_missing_path_is_not_a_junction(tmp_path):
    assert not inspect_path(tmp_path / "missing").is_junction


def test_directory_link_reports_target(tmp_path):
    target = tmp_path / "backing"
    target.mkdir()
    link = tmp_path / "link"
    os.symlink(target, link, target_is_directory=True)

    info = inspect_path(link)
    assert info.is_junction
    assert info.target == target


def test_relative_link_target_is_resolved_against_parent(tmp_path):
    (tmp_path / "backing").mkdir()
    link = tmp_path / "link"
    os.symlink("backing", link, target_is_directory=True)

    assert inspect_path(link).target == tmp_path / "backing"


def test_dangling_link_is_still_a_junction(tmp_path):
    link = tmp_path / "link"
    os.symlink(tmp_path / "gone", link, target_is_directory=True)

    inspector = ReparseInspector()
    assert inspector.is_junction(link)
    assert inspector.inspect(link).target == tmp_path / "gone"
