"""Tests for the command-line interface and its exit codes."""

import signal
from pathlib import Path

import pytest
import yaml

from pcibisect import cli
from pcibisect.config.loader import example_config_path, load_config
from pcibisect.core.bisect_runner import parse_first_bad
from pcibisect.core.classifier import EXIT_FATAL
from pcibisect.exceptions import StepInterrupted


@pytest.fixture(autouse=True)
def no_sudo(monkeypatch):
    monkeypatch.delenv("SUDO_UID", raising=False)
    monkeypatch.delenv("SUDO_GID", raising=False)


@pytest.fixture
def config_file(tmp_path):
    data = {
        "device": {"address": "0000:03:00.0", "sysfs_root": str(tmp_path / "root")},
        "vm": {"disks": ["guest.img"]},
        "oracle": {"test_command": "/usr/bin/repro"},
        "state_dir": "state",
    }
    path = tmp_path / "pcibisect.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


def test_step_with_missing_config_aborts_the_search(tmp_path):
    assert cli.main(["-c", str(tmp_path / "absent.yaml"), "step"]) == EXIT_FATAL


def test_step_with_missing_device_aborts_the_search(config_file):
    assert cli.main(["-c", str(config_file), "step"]) == EXIT_FATAL


def test_step_interrupted_exits_with_signal_code(config_file, monkeypatch):
    def interrupted(host, address):
        raise StepInterrupted(signal.SIGTERM)

    monkeypatch.setattr(cli, "resolve_group", interrupted)

    assert cli.main(["-c", str(config_file), "step"]) == 128 + signal.SIGTERM


def test_other_commands_report_failure_with_status_one(config_file):
    assert cli.main(["-c", str(config_file), "group"]) == 1


def test_no_command_prints_help(capsys):
    assert cli.main([]) == 1
    assert "usage" in capsys.readouterr().out


def test_init_config(tmp_path):
    output = tmp_path / "new.yaml"

    assert cli.main(["init-config", "-o", str(output)]) == 0
    assert output.read_text() == example_config_path().read_text()

    assert cli.main(["init-config", "-o", str(output), "--force"]) == 0


def test_oracle_script(config_file, tmp_path, capsys):
    assert cli.main(["-c", str(config_file), "oracle-script"]) == 0
    assert "if /usr/bin/repro; then" in capsys.readouterr().out

    output = tmp_path / "oracle.sh"
    assert cli.main(["-c", str(config_file), "oracle-script", "-o", str(output)]) == 0
    assert output.stat().st_mode & 0o111


def test_oracle_script_requires_test_command(tmp_path):
    path = tmp_path / "pcibisect.yaml"
    path.write_text(yaml.safe_dump({"device": {"address": "03:00.0"}, "vm": {"bios": "fw.bin"}}))

    assert cli.main(["-c", str(path), "oracle-script"]) == 1


def test_report_without_runs(config_file):
    assert cli.main(["-c", str(config_file), "report"]) == 1


def test_logs_list_on_empty_journal(config_file, capsys):
    assert cli.main(["-c", str(config_file), "logs", "list"]) == 0
    assert "No logs found" in capsys.readouterr().out


def test_state_inside_workspace_survives_cleaning(config_file):
    config = load_config(str(config_file))

    workspace = cli.create_workspace(config, str(config_file))

    assert "/state" in workspace.clean_exclude
    assert "/pcibisect.yaml" in workspace.clean_exclude
    assert Path(workspace.path) == Path(config.workspace)


def test_parse_first_bad():
    log = (
        "git bisect start 'bbb' 'aaa'\n"
        "# bad: [bbbbbbb] Break probe\n"
        "git bisect bad bbbbbbb\n"
        "# first bad commit: [0123abcd] Break probe\n"
    )

    assert parse_first_bad(log) == "0123abcd"
    assert parse_first_bad("git bisect start\n") is None
