#!/usr/bin/env python3
"""YAML configuration loading and validation.

Turns a pcibisect.yaml file into a HarnessConfig. Relative paths are
resolved against the directory holding the configuration file.
"""

import logging
import os
import pwd
import shlex
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from pcibisect.config.config import (
    DEFAULT_PASSTHROUGH_DRIVER,
    DEFAULT_STATE_DIR,
    BuildConfig,
    DeviceConfig,
    HarnessConfig,
    OracleConfig,
    PortForward,
    VMConfig,
)
from pcibisect.device.base import normalize_address
from pcibisect.exceptions import ConfigError


logger = logging.getLogger(__name__)

# Constants
DEFAULT_CONFIG_PATH = "pcibisect.yaml"
CONFIG_ENV = "PCIBISECT_CONFIG"
EXAMPLE_CONFIG_NAME = "pcibisect.yaml.example"
MAX_PORT = 65535


def default_config_path() -> str:
    """Configuration path from the environment, or the default file name."""
    return os.environ.get(CONFIG_ENV, DEFAULT_CONFIG_PATH)


def example_config_path() -> Path:
    """Annotated example configuration shipped with the package."""
    return Path(__file__).parent / EXAMPLE_CONFIG_NAME


def load_config(config_path: str) -> HarnessConfig:
    """Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated HarnessConfig

    Raises:
        ConfigError: If the file is missing, unreadable or invalid
    """
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(
            f"Config file not found: {config_path} (create one with: pcibisect init-config)"
        )

    try:
        with path.open() as f:
            config_dict = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read config file {config_path}: {exc}") from exc

    if config_dict is None:
        config_dict = {}
    if not isinstance(config_dict, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    logger.debug(f"Loaded configuration from {path}")
    return create_harness_config(config_dict, path.parent.resolve())


def _section(config_dict: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = config_dict.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    return section


def _resolve_path(value: Optional[str], base_dir: Path) -> Optional[str]:
    if not value:
        return None
    path = Path(str(value)).expanduser()
    if not path.is_absolute():
        resolved = (base_dir / path).resolve()
        logger.debug(f"Resolved path: {value} -> {resolved}")
        return str(resolved)
    return str(path)


def _positive(value: Any, key: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"'{key}' must be a positive number, got {value!r}")
    return value


def _string_list(value: Any, key: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return shlex.split(value)
    if not isinstance(value, list):
        raise ConfigError(f"'{key}' must be a list")
    return [str(item) for item in value]


def _resolve_owner(owner: Optional[str]) -> Tuple[Optional[int], Optional[int]]:
    """Resolve the user that receives the passthrough handle.

    Without an explicit owner, the user who invoked sudo is used.
    """
    if owner:
        try:
            entry = pwd.getpwnam(str(owner))
        except KeyError as exc:
            raise ConfigError(f"'device.owner': unknown user {owner!r}") from exc
        return entry.pw_uid, entry.pw_gid

    sudo_uid = os.environ.get("SUDO_UID")
    if sudo_uid:
        sudo_gid = os.environ.get("SUDO_GID")
        return int(sudo_uid), int(sudo_gid) if sudo_gid else None

    return None, None


def _device_config(section: Dict[str, Any]) -> DeviceConfig:
    address = section.get("address")
    if not address:
        raise ConfigError("'device.address' is required")
    try:
        address = normalize_address(str(address))
    except ValueError as exc:
        raise ConfigError(f"'device.address': {exc}") from exc

    owner_uid, owner_gid = _resolve_owner(section.get("owner"))
    return DeviceConfig(
        address=address,
        passthrough_driver=section.get("passthrough_driver", DEFAULT_PASSTHROUGH_DRIVER),
        owner_uid=owner_uid,
        owner_gid=owner_gid,
        sysfs_root=section.get("sysfs_root", "/"),
    )


def _port_forward(value: Any) -> Optional[PortForward]:
    if not value:
        return None
    if not isinstance(value, dict) or "host" not in value or "guest" not in value:
        raise ConfigError("'vm.port_forward' needs 'host' and 'guest' ports")

    ports = []
    for key in ("host", "guest"):
        port = value[key]
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port <= MAX_PORT:
            raise ConfigError(f"'vm.port_forward.{key}' must be a TCP port, got {port!r}")
        ports.append(port)
    return PortForward(host_port=ports[0], guest_port=ports[1])


def _vm_config(section: Dict[str, Any], base_dir: Path) -> VMConfig:
    defaults = VMConfig()
    disks = [_resolve_path(disk, base_dir) for disk in _string_list(section.get("disks"), "vm.disks")]
    cpus = section.get("cpus", defaults.cpus)
    if isinstance(cpus, bool) or not isinstance(cpus, int) or cpus <= 0:
        raise ConfigError(f"'vm.cpus' must be a positive integer, got {cpus!r}")

    vm = VMConfig(
        qemu_binary=section.get("qemu_binary", defaults.qemu_binary),
        machine=section.get("machine", defaults.machine),
        cpu=section.get("cpu", defaults.cpu),
        enable_kvm=bool(section.get("enable_kvm", defaults.enable_kvm)),
        memory=str(section.get("memory", defaults.memory)),
        cpus=cpus,
        disks=disks,
        kernel=_resolve_path(section.get("kernel"), base_dir),
        initrd=_resolve_path(section.get("initrd"), base_dir),
        bios=_resolve_path(section.get("bios"), base_dir),
        root_device=section.get("root_device", defaults.root_device),
        append=section.get("append", defaults.append) or "",
        port_forward=_port_forward(section.get("port_forward")),
        extra_args=_string_list(section.get("extra_args"), "vm.extra_args"),
    )

    if not (vm.kernel or vm.bios or vm.disks):
        raise ConfigError("'vm' needs a kernel, a bios or at least one disk to boot from")
    return vm


def _build_config(section: Dict[str, Any]) -> BuildConfig:
    command = section.get("command")
    if command is not None and not isinstance(command, (str, list)):
        raise ConfigError("'build.command' must be a string or a list")
    if isinstance(command, list):
        command = [str(part) for part in command]

    return BuildConfig(
        command=command or None,
        clean_ignored=bool(section.get("clean_ignored", True)),
        clean_exclude=_string_list(section.get("clean_exclude"), "build.clean_exclude"),
    )


def create_harness_config(config_dict: Dict[str, Any], base_dir: Path) -> HarnessConfig:
    """Create HarnessConfig from a configuration dictionary.

    Args:
        config_dict: Configuration dictionary from YAML
        base_dir: Directory relative paths are resolved against

    Returns:
        HarnessConfig object

    Raises:
        ConfigError: If a required key is missing or a value is invalid
    """
    timeouts = _section(config_dict, "timeouts")
    oracle = _section(config_dict, "oracle")
    journal = _section(config_dict, "journal")
    defaults = OracleConfig()

    state_dir = _resolve_path(config_dict.get("state_dir", DEFAULT_STATE_DIR), base_dir)

    return HarnessConfig(
        device=_device_config(_section(config_dict, "device")),
        vm=_vm_config(_section(config_dict, "vm"), base_dir),
        oracle=OracleConfig(
            entrypoint=oracle.get("entrypoint", defaults.entrypoint),
            success_token=str(oracle.get("success_token", defaults.success_token)),
            test_command=oracle.get("test_command"),
        ),
        build=_build_config(_section(config_dict, "build")),
        build_timeout=_positive(timeouts.get("build", 1800), "timeouts.build"),
        session_timeout=_positive(timeouts.get("session", 600), "timeouts.session"),
        bind_timeout=_positive(timeouts.get("bind", 5), "timeouts.bind"),
        shutdown_timeout=_positive(timeouts.get("shutdown", 10), "timeouts.shutdown"),
        workspace=_resolve_path(config_dict.get("workspace", "."), base_dir),
        state_dir=state_dir,
        db_path=_resolve_path(config_dict.get("database_path"), base_dir),
        journal_enabled=bool(journal.get("enabled", True)),
        console_log_dir=_resolve_path(config_dict.get("console_log_dir"), base_dir),
    )
