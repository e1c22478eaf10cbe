"""Tests for YAML configuration loading and validation."""

from pathlib import Path

import pytest
import yaml

from pcibisect.config.loader import example_config_path, load_config
from pcibisect.exceptions import ConfigError


MINIMAL = {
    "device": {"address": "03:00.0"},
    "vm": {"disks": ["images/guest.img"]},
}


@pytest.fixture(autouse=True)
def no_sudo(monkeypatch):
    monkeypatch.delenv("SUDO_UID", raising=False)
    monkeypatch.delenv("SUDO_GID", raising=False)


def write_config(tmp_path, data):
    path = tmp_path / "pcibisect.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


def test_defaults(tmp_path):
    config = load_config(str(write_config(tmp_path, MINIMAL)))

    assert config.device.address == "0000:03:00.0"
    assert config.device.passthrough_driver == "vfio-pci"
    assert config.device.owner_uid is None
    assert config.vm.machine == "q35"
    assert config.vm.memory == "4G"
    assert config.vm.cpus == 2
    assert config.vm.root_device == "/dev/vda"
    assert config.oracle.success_token == "PCIBISECT-GOOD"
    assert config.build.command is None
    assert config.build.clean_ignored is True
    assert config.build_timeout == 1800
    assert config.session_timeout == 600
    assert config.journal_enabled is True


def test_relative_paths_resolve_against_config_dir(tmp_path):
    data = dict(MINIMAL, vm={"disks": ["images/guest.img"], "kernel": "/boot/bzImage"})
    config = load_config(str(write_config(tmp_path, data)))

    root = tmp_path.resolve()
    assert config.vm.disks == [str(root / "images" / "guest.img")]
    assert config.vm.kernel == "/boot/bzImage"
    assert config.workspace == str(root)
    assert config.state_dir == str(root / ".pcibisect")
    assert config.db_path == str(Path(config.state_dir) / "pcibisect.db")
    assert config.console_log_dir == str(Path(config.state_dir) / "console")


def test_full_configuration(tmp_path):
    data = {
        "device": {"address": "0000:03:00.0", "passthrough_driver": "vfio-pci"},
        "vm": {
            "kernel": "bzImage",
            "port_forward": {"host": 2222, "guest": 22},
            "extra_args": "-snapshot -display none",
        },
        "oracle": {"entrypoint": "/oracle", "success_token": "OK", "test_command": "true"},
        "build": {"command": ["make", "-j8"], "clean_exclude": ["*.config"]},
        "timeouts": {"build": 60, "session": 30, "bind": 1, "shutdown": 2},
        "journal": {"enabled": False},
        "database_path": "/var/lib/pcibisect.db",
    }
    config = load_config(str(write_config(tmp_path, data)))

    assert config.vm.port_forward.host_port == 2222
    assert config.vm.port_forward.guest_port == 22
    assert config.vm.extra_args == ["-snapshot", "-display", "none"]
    assert config.oracle.entrypoint == "/oracle"
    assert config.build.command == ["make", "-j8"]
    assert config.build.clean_exclude == ["*.config"]
    assert config.session_timeout == 30
    assert config.journal_enabled is False
    assert config.db_path == "/var/lib/pcibisect.db"


def test_owner_defaults_to_sudo_user(tmp_path, monkeypatch):
    monkeypatch.setenv("SUDO_UID", "1000")
    monkeypatch.setenv("SUDO_GID", "1000")

    config = load_config(str(write_config(tmp_path, MINIMAL)))

    assert (config.device.owner_uid, config.device.owner_gid) == (1000, 1000)


def test_explicit_owner_is_looked_up(tmp_path):
    data = dict(MINIMAL, device={"address": "03:00.0", "owner": "root"})

    config = load_config(str(write_config(tmp_path, data)))

    assert config.device.owner_uid == 0


@pytest.mark.parametrize(
    "data,key",
    [
        ({"vm": {"disks": ["a.img"]}}, "device.address"),
        ({"device": {"address": "3:0.0"}, "vm": {"disks": ["a.img"]}}, "device.address"),
        ({"device": {"address": "03:00.0"}}, "vm"),
        (dict(MINIMAL, timeouts={"session": 0}), "timeouts.session"),
        (dict(MINIMAL, timeouts={"build": "soon"}), "timeouts.build"),
        (dict(MINIMAL, vm={"disks": ["a.img"], "port_forward": {"host": 2222}}), "port_forward"),
        (dict(MINIMAL, vm={"disks": ["a.img"], "port_forward": {"host": 0, "guest": 22}}), "port_forward"),
        (dict(MINIMAL, vm={"disks": ["a.img"], "cpus": 0}), "vm.cpus"),
        (dict(MINIMAL, build={"command": 42}), "build.command"),
        (dict(MINIMAL, device={"address": "03:00.0", "owner": "no-such-user-xyz"}), "device.owner"),
        (dict(MINIMAL, timeouts=["build"]), "timeouts"),
    ],
)
def test_invalid_configuration(tmp_path, data, key):
    with pytest.raises(ConfigError, match=key.replace(".", r"\.")):
        load_config(str(write_config(tmp_path, data)))


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(str(tmp_path / "absent.yaml"))


def test_non_mapping_file(tmp_path):
    path = tmp_path / "pcibisect.yaml"
    path.write_text("- just\n- a list\n")

    with pytest.raises(ConfigError):
        load_config(str(path))


def test_example_config_is_valid(tmp_path):
    path = tmp_path / "pcibisect.yaml"
    path.write_text(example_config_path().read_text())

    config = load_config(str(path))

    assert config.device.address == "0000:03:00.0"
    assert config.oracle.test_command
