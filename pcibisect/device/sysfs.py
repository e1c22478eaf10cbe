#!/usr/bin/env python3
"""Sysfs-backed host control surface.

Reads PCI topology from /sys and changes driver ownership through the
driver_override, bind, unbind and drivers_probe controls.
"""

import logging
import os
from pathlib import Path
from typing import List, Optional

from pcibisect.device.base import HostInterface


logger = logging.getLogger(__name__)

# Constants
PCI_HEADER_TYPE_OFFSET = 0x0E


class SysfsHost(HostInterface):
    """Host control surface backed by Linux sysfs.

    Attributes:
        root: Filesystem root (``/`` on a real host, a temporary tree in tests)
    """

    def __init__(self, root: str = "/") -> None:
        """Initialize sysfs host.

        Args:
            root: Filesystem root under which sys/ and dev/ are located
        """
        self.root = Path(root)
        self.pci_path = self.root / "sys" / "bus" / "pci"
        self.devices_path = self.pci_path / "devices"
        self.drivers_path = self.pci_path / "drivers"
        self.groups_path = self.root / "sys" / "kernel" / "iommu_groups"
        self.vfio_path = self.root / "dev" / "vfio"

    def _device_path(self, address: str) -> Path:
        return self.devices_path / address

    def _write(self, path: Path, value: str) -> None:
        """Write a value to a sysfs control file.

        Raises:
            OSError: If the control file is missing or the kernel rejects the write
        """
        if not path.exists():
            raise FileNotFoundError(f"Sysfs path does not exist: {path}")
        with path.open("w") as f:
            f.write(value)
        logger.debug(f"Wrote '{value}' to {path}")

    def device_exists(self, address: str) -> bool:
        return self._device_path(address).exists()

    def iommu_group_of(self, address: str) -> Optional[int]:
        link = self._device_path(address) / "iommu_group"
        if not link.exists():
            return None
        try:
            return int(Path(os.readlink(link)).name)
        except (OSError, ValueError):
            logger.debug(f"Unreadable iommu_group link for {address}")
            return None

    def group_devices(self, group_id: int) -> List[str]:
        devices_dir = self.groups_path / str(group_id) / "devices"
        if not devices_dir.is_dir():
            return []
        return sorted(entry.name for entry in devices_dir.iterdir())

    def header_type(self, address: str) -> int:
        config_path = self._device_path(address) / "config"
        with config_path.open("rb") as f:
            f.seek(PCI_HEADER_TYPE_OFFSET)
            data = f.read(1)
        if not data:
            raise OSError(f"Config space of {address} is too short")
        return data[0]

    def current_driver(self, address: str) -> Optional[str]:
        link = self._device_path(address) / "driver"
        if not link.is_symlink():
            return None
        return Path(os.readlink(link)).name

    def set_driver_override(self, address: str, driver: str) -> None:
        # An empty write is rejected by some kernels; a newline clears the override
        self._write(self._device_path(address) / "driver_override", driver or "\n")

    def unbind(self, address: str, driver: str) -> None:
        self._write(self.drivers_path / driver / "unbind", address)

    def bind(self, address: str, driver: str) -> None:
        self._write(self.drivers_path / driver / "bind", address)

    def reprobe(self, address: str) -> None:
        self._write(self.pci_path / "drivers_probe", address)

    def driver_loaded(self, driver: str) -> bool:
        return (self.drivers_path / driver).is_dir()

    def group_handle(self, group_id: int) -> Path:
        return self.vfio_path / str(group_id)

    def set_owner(self, path: Path, uid: int, gid: int) -> None:
        os.chown(path, uid, gid)
        logger.debug(f"Changed owner of {path} to {uid}:{gid}")

    def iommu_enabled(self) -> bool:
        """Check whether the host exposes any IOMMU groups."""
        return self.groups_path.is_dir() and any(self.groups_path.iterdir())

    def __repr__(self) -> str:
        return f"<SysfsHost(root={self.root})>"
