#!/usr/bin/env python3
"""Configuration classes for passthrough bisection.

This module contains the configuration dataclasses used throughout pcibisect.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union


# Constants
DEFAULT_PASSTHROUGH_DRIVER = "vfio-pci"
DEFAULT_SUCCESS_TOKEN = "PCIBISECT-GOOD"
DEFAULT_STATE_DIR = ".pcibisect"
DEFAULT_DB_NAME = "pcibisect.db"


@dataclass
class DeviceConfig:
    """Configuration for the passthrough target.

    Attributes:
        address: PCI address of the target function (domain:bus:device.function)
        passthrough_driver: Driver that takes ownership during passthrough
        owner_uid: User that receives ownership of the group handle (None keeps root)
        owner_gid: Group that receives ownership of the group handle
        sysfs_root: Root under which sysfs and /dev are looked up
    """

    address: str
    passthrough_driver: str = DEFAULT_PASSTHROUGH_DRIVER
    owner_uid: Optional[int] = None
    owner_gid: Optional[int] = None
    sysfs_root: str = "/"


@dataclass
class PortForward:
    """Guest-to-host TCP port forward."""

    host_port: int
    guest_port: int


@dataclass
class VMConfig:
    """Resources and boot settings for the ephemeral virtual machine.

    Attributes:
        qemu_binary: QEMU system emulator to execute
        machine: Machine type passed to -machine
        cpu: CPU model passed to -cpu
        enable_kvm: Use hardware acceleration
        memory: Guest memory size (QEMU -m syntax)
        cpus: Number of vCPUs
        disks: Storage image paths attached as virtio disks
        kernel: Kernel image booted directly (optional)
        initrd: Initial ramdisk for the kernel (optional)
        bios: Firmware or bootloader image (optional, used when no kernel is set)
        root_device: Guest root device passed on the kernel command line
        append: Additional kernel command line arguments
        port_forward: Optional guest-to-host port forward
        extra_args: Additional raw QEMU arguments
    """

    qemu_binary: str = "qemu-system-x86_64"
    machine: str = "q35"
    cpu: str = "host"
    enable_kvm: bool = True
    memory: str = "4G"
    cpus: int = 2
    disks: List[str] = field(default_factory=list)
    kernel: Optional[str] = None
    initrd: Optional[str] = None
    bios: Optional[str] = None
    root_device: str = "/dev/vda"
    append: str = "console=ttyS0"
    port_forward: Optional[PortForward] = None
    extra_args: List[str] = field(default_factory=list)


@dataclass
class OracleConfig:
    """Guest test oracle contract.

    Attributes:
        entrypoint: Guest path of the oracle, used as init= override
        success_token: Console line printed by the oracle on a good revision
        test_command: Reproducer command (used when rendering the entrypoint script)
    """

    entrypoint: str = "/usr/local/sbin/pcibisect-oracle"
    success_token: str = DEFAULT_SUCCESS_TOKEN
    test_command: Optional[str] = None


@dataclass
class BuildConfig:
    """Build configuration for the subject under test.

    Attributes:
        command: Shell string or argv list; None disables the build step
        clean_ignored: Also remove ignored files a step created when restoring the workspace
        clean_exclude: Patterns never removed when restoring the workspace
    """

    command: Optional[Union[str, List[str]]] = None
    clean_ignored: bool = True
    clean_exclude: List[str] = field(default_factory=list)


@dataclass
class HarnessConfig:
    """Complete harness configuration.

    Attributes:
        device: Passthrough target configuration (REQUIRED)
        vm: Virtual machine configuration
        oracle: Guest oracle contract
        build: Build configuration
        build_timeout: Build timeout in seconds
        session_timeout: Guest run timeout in seconds
        bind_timeout: Time allowed for a driver change to settle in seconds
        shutdown_timeout: Grace period between terminate and kill in seconds
        workspace: Path to the revision-controlled tree under test
        state_dir: Directory for console logs and the journal
        db_path: Path to SQLite journal database
        journal_enabled: Record steps in the journal
        console_log_dir: Directory receiving per-step console logs
    """

    # Passthrough target (REQUIRED)
    device: DeviceConfig

    vm: VMConfig = field(default_factory=VMConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    build: BuildConfig = field(default_factory=BuildConfig)

    # Timeouts
    build_timeout: int = 1800
    session_timeout: int = 600
    bind_timeout: float = 5.0
    shutdown_timeout: float = 10.0

    # Workspace and state
    workspace: str = "."
    state_dir: str = DEFAULT_STATE_DIR
    db_path: Optional[str] = None
    journal_enabled: bool = True
    console_log_dir: Optional[str] = None

    def __post_init__(self) -> None:
        if self.db_path is None:
            self.db_path = str(Path(self.state_dir) / DEFAULT_DB_NAME)
        if self.console_log_dir is None:
            self.console_log_dir = str(Path(self.state_dir) / "console")
