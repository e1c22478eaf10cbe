"""Tests for the git bisect run wrapper."""

import sys
from unittest.mock import MagicMock

import pytest

from conftest import write_script
from pcibisect.core.bisect_runner import BisectRunner
from pcibisect.core.workspace import Workspace
from pcibisect.device.binder import DeviceBinder
from pcibisect.exceptions import WorkspaceError
from pcibisect.persistence.state_manager import StateManager


class ScriptedRunner(BisectRunner):
    """Runner whose step is a shell script instead of the pcibisect CLI."""

    def __init__(self, script, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.script = script

    def step_command(self):
        return [str(self.script)]


@pytest.fixture
def step_script(tmp_path):
    # Good while probe() still returns 0
    return write_script(tmp_path / "step.sh", 'grep -q "return 0" driver.c\n')


def test_run_finds_first_bad_commit(tmp_path, git_repo, git, group, step_script):
    binder = MagicMock(spec=DeviceBinder)
    journal = StateManager(str(tmp_path / "journal.db"))
    for name in ("README", "NEWS"):
        (git_repo / name).write_text(f"{name}\n")
        git(git_repo, "add", name)
        git(git_repo, "commit", "-q", "-m", f"Add {name}")
    culprit = git(git_repo, "rev-parse", "HEAD~2").strip()
    runner = ScriptedRunner(
        step_script, Workspace(str(git_repo)), binder, group, "unused.yaml", journal=journal
    )

    first_bad = runner.run("HEAD~3", "HEAD")

    assert first_bad == culprit
    binder.detach.assert_called_once_with(group)
    assert "bisect" not in git(git_repo, "status")
    run = journal.get_latest_run()
    assert run.status == "completed"
    assert run.first_bad_revision == culprit
    journal.close()


def test_run_refuses_dirty_workspace(git_repo, group, step_script):
    binder = MagicMock(spec=DeviceBinder)
    (git_repo / "driver.c").write_text("local edit\n")
    runner = ScriptedRunner(step_script, Workspace(str(git_repo)), binder, group, "unused.yaml")

    with pytest.raises(WorkspaceError, match="uncommitted"):
        runner.run("HEAD~1", "HEAD")

    binder.detach.assert_not_called()


def test_step_command_reinvokes_the_cli(git_repo, group):
    runner = BisectRunner(
        Workspace(str(git_repo)),
        MagicMock(spec=DeviceBinder),
        group,
        "/etc/pcibisect.yaml",
        verbose=True,
    )

    assert runner.step_command() == [
        sys.executable,
        "-m",
        "pcibisect.cli",
        "-c",
        "/etc/pcibisect.yaml",
        "--verbose",
        "step",
    ]
