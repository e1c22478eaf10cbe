"""Shared fixtures: fake host topology, fake VM sessions and git workspaces."""

import errno
import os
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest

from pcibisect.config.config import BuildConfig, DeviceConfig, HarnessConfig, VMConfig
from pcibisect.device.base import HostInterface
from pcibisect.device.binder import DeviceBinder
from pcibisect.device.topology import resolve_group
from pcibisect.exceptions import SessionTimeout
from pcibisect.vm.base import (
    SessionConfig,
    SessionHandle,
    SessionManager,
    SessionOutcome,
    SessionState,
)


PASSTHROUGH = "vfio-pci"
TARGET = "0000:03:00.0"
COMPANION = "0000:03:00.1"
BRIDGE = "0000:00:1c.0"
GROUP_ID = 12

HEADER_ENDPOINT = 0x80
HEADER_BRIDGE = 0x81


class FakeHost(HostInterface):
    """In-memory host topology with kernel-like driver binding behaviour.

    Attributes:
        devices: Per-address state (group, header, driver, default driver)
        busy: Addresses whose current driver refuses to unbind
        calls: Every control-surface write, in order
        owners: Ownership changes of passthrough handles
    """

    def __init__(self, handle_dir: Path, create_handles: bool = True) -> None:
        self.devices: Dict[str, Dict] = {}
        self.overrides: Dict[str, str] = {}
        self.busy: Set[str] = set()
        self.loaded = {PASSTHROUGH}
        self.calls: List[Tuple[str, str, str]] = []
        self.owners: Dict[Path, Tuple[int, int]] = {}
        self.handle_dir = handle_dir
        self.create_handles = create_handles

    def add_device(
        self,
        address: str,
        group: Optional[int] = GROUP_ID,
        driver: Optional[str] = None,
        bridge: bool = False,
        default_driver: Optional[str] = None,
    ) -> None:
        self.devices[address] = {
            "group": group,
            "header": HEADER_BRIDGE if bridge else HEADER_ENDPOINT,
            "driver": driver,
            "default": default_driver if default_driver is not None else driver,
        }
        if driver:
            self.loaded.add(driver)

    def drivers(self) -> Dict[str, Optional[str]]:
        return {address: state["driver"] for address, state in self.devices.items()}

    def rebound(self) -> Set[str]:
        return {address for op, address, _ in self.calls if op in ("bind", "unbind")}

    def device_exists(self, address: str) -> bool:
        return address in self.devices

    def iommu_group_of(self, address: str) -> Optional[int]:
        return self.devices[address]["group"]

    def group_devices(self, group_id: int) -> List[str]:
        return sorted(a for a, state in self.devices.items() if state["group"] == group_id)

    def header_type(self, address: str) -> int:
        return self.devices[address]["header"]

    def current_driver(self, address: str) -> Optional[str]:
        return self.devices[address]["driver"]

    def set_driver_override(self, address: str, driver: str) -> None:
        self.calls.append(("override", address, driver))
        self.overrides[address] = driver

    def unbind(self, address: str, driver: str) -> None:
        self.calls.append(("unbind", address, driver))
        if address in self.busy:
            raise OSError(errno.EBUSY, "Device or resource busy")
        if self.devices[address]["driver"] != driver:
            raise OSError(errno.ENODEV, "No such device")
        self.devices[address]["driver"] = None

    def bind(self, address: str, driver: str) -> None:
        self.calls.append(("bind", address, driver))
        override = self.overrides.get(address)
        if override and override != driver:
            raise OSError(errno.EINVAL, "Invalid argument")
        self.devices[address]["driver"] = driver
        if driver == PASSTHROUGH and self.create_handles:
            self.handle_dir.mkdir(parents=True, exist_ok=True)
            self.group_handle(self.devices[address]["group"]).touch()

    def reprobe(self, address: str) -> None:
        self.calls.append(("reprobe", address, ""))
        state = self.devices[address]
        if state["driver"] is None:
            state["driver"] = self.overrides.get(address) or state["default"]

    def driver_loaded(self, driver: str) -> bool:
        return driver in self.loaded

    def group_handle(self, group_id: int) -> Path:
        return self.handle_dir / str(group_id)

    def set_owner(self, path: Path, uid: int, gid: int) -> None:
        self.owners[path] = (uid, gid)


class FakeSession(SessionHandle):
    """Session whose outcome is scripted by the test."""

    def __init__(
        self,
        config: SessionConfig,
        output: bytes = b"",
        error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(config)
        self.state = SessionState.BOOTING
        self.output = output
        self.error = error
        self.killed = False

    def read_output(self) -> bytes:
        return self.output

    def wait(self, timeout: float) -> SessionOutcome:
        if isinstance(self.error, SessionTimeout):
            self.kill()
            raise self.error
        if self.error is not None:
            raise self.error
        self.state = SessionState.EXITED
        return SessionOutcome(returncode=0, output=self.output, duration=0.1, state=self.state)

    def stop(self) -> None:
        self.state = SessionState.KILLED

    def kill(self) -> None:
        self.killed = True
        self.state = SessionState.KILLED


class FakeSessionManager(SessionManager):
    """Session manager launching FakeSessions with a scripted outcome."""

    def __init__(
        self,
        binder: DeviceBinder,
        output: bytes = b"",
        error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(binder)
        self.output = output
        self.error = error
        self.launched: List[FakeSession] = []
        self.attached_at_launch: List[bool] = []

    def _launch(self, config: SessionConfig) -> SessionHandle:
        self.attached_at_launch.append(self.binder.is_attached(config.group))
        session = FakeSession(config, output=self.output, error=self.error)
        self.launched.append(session)
        return session


class SysfsTree:
    """Minimal fake of /sys and /dev/vfio under a temporary root."""

    def __init__(self, root):
        self.root = root
        self.devices = root / "sys" / "bus" / "pci" / "devices"
        self.drivers = root / "sys" / "bus" / "pci" / "drivers"
        self.groups = root / "sys" / "kernel" / "iommu_groups"
        self.devices.mkdir(parents=True)
        self.drivers.mkdir(parents=True)
        self.groups.mkdir(parents=True)
        (root / "sys" / "bus" / "pci" / "drivers_probe").write_text("")

    def add_driver(self, name):
        path = self.drivers / name
        path.mkdir(exist_ok=True)
        (path / "bind").write_text("")
        (path / "unbind").write_text("")
        return path

    def add_device(self, address, group, header, driver=None):
        path = self.devices / address
        path.mkdir()
        config = bytearray(64)
        config[0x0E] = header
        (path / "config").write_bytes(bytes(config))
        (path / "driver_override").write_text("(null)\n")

        group_dir = self.groups / str(group) / "devices"
        group_dir.mkdir(parents=True, exist_ok=True)
        os.symlink(path, group_dir / address)
        os.symlink(self.groups / str(group), path / "iommu_group")

        if driver:
            os.symlink(self.add_driver(driver), path / "driver")
        return path


@pytest.fixture
def sysfs(tmp_path):
    tree = SysfsTree(tmp_path)
    tree.add_device(BRIDGE, GROUP_ID, 0x01, driver="pcieport")
    tree.add_device(TARGET, GROUP_ID, 0x80, driver="amdgpu")
    tree.add_device(COMPANION, GROUP_ID, 0x00)
    tree.add_driver("vfio-pci")
    return tree


@pytest.fixture
def fake_host(tmp_path):
    """Group 12 with a bridge, the target and a companion audio function."""
    host = FakeHost(tmp_path / "dev-vfio")
    host.add_device(BRIDGE, bridge=True, driver="pcieport")
    host.add_device(TARGET, driver="amdgpu")
    host.add_device(COMPANION, driver="snd_hda_intel")
    host.add_device("0000:00:02.0", group=1, driver="i915")
    return host


@pytest.fixture
def group(fake_host):
    return resolve_group(fake_host, TARGET)


@pytest.fixture
def binder(fake_host):
    return DeviceBinder(fake_host, passthrough_driver=PASSTHROUGH, bind_timeout=0.2)


def _git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", "-C", str(repo), *args], capture_output=True, text=True, check=True
    )
    return result.stdout


@pytest.fixture
def git_repo(tmp_path, monkeypatch):
    """Git working tree with two commits and a .gitignore for build output."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    for var in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(var, "Test Runner")
    for var in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(var, "runner@example.com")

    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-q")
    (repo / ".gitignore").write_text("*.o\n")
    (repo / "driver.c").write_text("int probe(void) { return 0; }\n")
    _git(repo, "add", ".")
    _git(repo, "commit", "-q", "-m", "Add driver")
    (repo / "driver.c").write_text("int probe(void) { return 1; }\n")
    _git(repo, "commit", "-q", "-am", "Change probe result")
    return repo


@pytest.fixture
def git():
    return _git


@pytest.fixture
def harness_config(tmp_path, git_repo):
    """Harness configuration building in the git workspace."""
    disk = tmp_path / "guest.img"
    disk.write_bytes(b"")
    return HarnessConfig(
        device=DeviceConfig(address=TARGET),
        vm=VMConfig(disks=[str(disk)]),
        build=BuildConfig(command="echo compiling && echo object > driver.o"),
        build_timeout=30,
        session_timeout=30,
        workspace=str(git_repo),
        state_dir=str(tmp_path / "state"),
    )


def write_script(path: Path, body: str) -> Path:
    """Write an executable shell script."""
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(0o755)
    return path
