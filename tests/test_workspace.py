"""Tests for the workspace guard."""

import pytest

from pcibisect.core.workspace import Workspace
from pcibisect.exceptions import WorkspaceError


def test_snapshot_records_head(git_repo, git):
    snapshot = Workspace(str(git_repo)).snapshot()

    assert snapshot.head == git(git_repo, "rev-parse", "HEAD").strip()
    assert snapshot.subject == "Change probe result"
    assert snapshot.short == snapshot.head[:7]


def test_describe_resolves_revisions(git_repo, git):
    commit, subject = Workspace(str(git_repo)).describe("HEAD~1")

    assert commit == git(git_repo, "rev-parse", "HEAD~1").strip()
    assert subject == "Add driver"


def test_restore_discards_every_change(git_repo):
    workspace = Workspace(str(git_repo))
    snapshot = workspace.snapshot()

    (git_repo / "driver.c").write_text("broken\n")
    (git_repo / "notes.txt").write_text("untracked\n")
    (git_repo / "build").mkdir()
    (git_repo / "build" / "driver.o").write_bytes(b"\x7fELF")
    assert workspace.dirty_paths()

    workspace.restore(snapshot)

    assert workspace.dirty_paths() == []
    assert (git_repo / "driver.c").read_text() == "int probe(void) { return 1; }\n"
    assert not (git_repo / "notes.txt").exists()
    assert not (git_repo / "build").exists()


def test_restore_returns_to_recorded_commit(git_repo, git):
    workspace = Workspace(str(git_repo))
    snapshot = workspace.snapshot()

    git(git_repo, "checkout", "-q", "HEAD~1")
    workspace.restore(snapshot)

    assert git(git_repo, "rev-parse", "HEAD").strip() == snapshot.head


def test_restore_can_keep_ignored_files(git_repo):
    workspace = Workspace(str(git_repo), clean_ignored=False)
    snapshot = workspace.snapshot()
    (git_repo / "driver.o").write_bytes(b"object")

    workspace.restore(snapshot)

    assert (git_repo / "driver.o").exists()


def test_restore_preserves_excluded_paths(git_repo):
    workspace = Workspace(str(git_repo), clean_exclude=["/.pcibisect"])
    snapshot = workspace.snapshot()
    state = git_repo / ".pcibisect" / "console"
    state.mkdir(parents=True)
    (state / "step.log").write_text("console\n")
    (git_repo / "driver.o").write_bytes(b"object")

    workspace.restore(snapshot)

    assert (state / "step.log").exists()
    assert not (git_repo / "driver.o").exists()


def test_dirty_paths_can_ignore_build_output(git_repo):
    workspace = Workspace(str(git_repo))
    (git_repo / "driver.o").write_bytes(b"object")

    assert workspace.dirty_paths() == ["driver.o"]
    assert workspace.dirty_paths(include_ignored=False) == []


def test_git_failure_is_a_workspace_error(tmp_path):
    with pytest.raises(WorkspaceError):
        Workspace(str(tmp_path / "not-a-repo")).snapshot()


def test_restore_keeps_files_that_predate_the_snapshot(git_repo):
    workspace = Workspace(str(git_repo))
    (git_repo / "kernel_config.o").write_text("CONFIG_DRM_AMDGPU=m\n")
    (git_repo / "local.txt").write_text("operator notes\n")
    snapshot = workspace.snapshot()
    (git_repo / "driver.o").write_bytes(b"object")
    (git_repo / "out" / "deep").mkdir(parents=True)
    (git_repo / "out" / "deep" / "probe.o").write_bytes(b"object")

    workspace.restore(snapshot)

    assert (git_repo / "kernel_config.o").read_text() == "CONFIG_DRM_AMDGPU=m\n"
    assert (git_repo / "local.txt").exists()
    assert not (git_repo / "driver.o").exists()
    assert not (git_repo / "out").exists()
    assert snapshot.untracked == frozenset({"kernel_config.o", "local.txt"})


def test_untracked_files_can_skip_ignored(git_repo):
    workspace = Workspace(str(git_repo))
    (git_repo / "driver.o").write_bytes(b"object")
    (git_repo / "notes.txt").write_text("untracked\n")

    assert sorted(workspace.untracked_files()) == ["driver.o", "notes.txt"]
    assert workspace.untracked_files(include_ignored=False) == ["notes.txt"]
