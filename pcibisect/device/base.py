#!/usr/bin/env python3
"""Abstract host control surface and device topology types.

Provides the interface through which all PCI topology queries and driver
ownership changes are made. Implementations talk to a real host (sysfs)
or to an in-memory fake for testing.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple


# Constants
PCI_HEADER_TYPE_MASK = 0x7F
PCI_HEADER_TYPE_BRIDGE = 0x01
PCI_HEADER_TYPE_CARDBUS = 0x02

ADDRESS_PATTERN = re.compile(
    r"^(?:(?P<domain>[0-9a-fA-F]{1,4}):)?"
    r"(?P<bus>[0-9a-fA-F]{2}):(?P<device>[0-1][0-9a-fA-F])\.(?P<function>[0-7])$"
)


def normalize_address(address: str) -> str:
    """Normalize a PCI address to the full domain:bus:device.function form.

    Args:
        address: Address with or without a domain prefix

    Returns:
        Lower-case address with a 4-digit domain

    Raises:
        ValueError: If the address is malformed
    """
    match = ADDRESS_PATTERN.match(address.strip())
    if not match:
        raise ValueError(f"Invalid PCI address: {address!r}")

    domain = int(match.group("domain") or "0", 16)
    return (
        f"{domain:04x}:{match.group('bus').lower()}:"
        f"{match.group('device').lower()}.{match.group('function')}"
    )


def is_bridge_header(header_type: int) -> bool:
    """Check whether a config-space header type describes a bridge."""
    return (header_type & PCI_HEADER_TYPE_MASK) in (
        PCI_HEADER_TYPE_BRIDGE,
        PCI_HEADER_TYPE_CARDBUS,
    )


class FunctionKind(Enum):
    """Classification of an isolation group member."""

    BRIDGE = "bridge"
    ENDPOINT = "endpoint"


@dataclass(frozen=True)
class GroupMember:
    """Single PCI function inside an isolation group."""

    address: str
    kind: FunctionKind

    @property
    def is_bridge(self) -> bool:
        return self.kind == FunctionKind.BRIDGE


@dataclass(frozen=True)
class IsolationGroup:
    """IOMMU group of the target function.

    Attributes:
        group_id: IOMMU group number
        target: Address of the function the group was resolved for
        members: Every function in the group, ordered by address
    """

    group_id: int
    target: str
    members: Tuple[GroupMember, ...]

    @property
    def endpoints(self) -> List[GroupMember]:
        """Members that are rebound as a unit."""
        return [member for member in self.members if not member.is_bridge]

    @property
    def bridges(self) -> List[GroupMember]:
        """Members that are never rebound."""
        return [member for member in self.members if member.is_bridge]

    def __str__(self) -> str:
        addresses = ", ".join(m.address for m in self.members)
        return f"IOMMU group {self.group_id} [{addresses}]"


class HostInterface(ABC):
    """Abstract access to host PCI topology and driver binding controls.

    Read methods implement the device topology query; write methods
    implement the driver-rebind control surface. Write methods raise
    OSError on failure so callers can classify the error.
    """

    @abstractmethod
    def device_exists(self, address: str) -> bool:
        """Check whether a PCI function exists.

        Args:
            address: Normalized PCI address

        Returns:
            True if the function is present on the host
        """

    @abstractmethod
    def iommu_group_of(self, address: str) -> Optional[int]:
        """Get the IOMMU group number of a function.

        Args:
            address: Normalized PCI address

        Returns:
            Group number, or None if the host exposes no group
        """

    @abstractmethod
    def group_devices(self, group_id: int) -> List[str]:
        """List the function addresses that belong to an IOMMU group.

        Args:
            group_id: IOMMU group number

        Returns:
            Function addresses in the group
        """

    @abstractmethod
    def header_type(self, address: str) -> int:
        """Read the config-space header type byte of a function."""

    @abstractmethod
    def current_driver(self, address: str) -> Optional[str]:
        """Get the driver currently bound to a function.

        Returns:
            Driver name, or None if no driver is bound
        """

    @abstractmethod
    def set_driver_override(self, address: str, driver: str) -> None:
        """Set the driver override of a function ("" clears it)."""

    @abstractmethod
    def unbind(self, address: str, driver: str) -> None:
        """Unbind a function from a driver."""

    @abstractmethod
    def bind(self, address: str, driver: str) -> None:
        """Bind a function to a driver."""

    @abstractmethod
    def reprobe(self, address: str) -> None:
        """Ask the kernel to probe a default driver for a function."""

    @abstractmethod
    def driver_loaded(self, driver: str) -> bool:
        """Check whether a driver is registered with the PCI bus."""

    @abstractmethod
    def group_handle(self, group_id: int) -> Path:
        """Path of the passthrough handle (device node) for a group."""

    @abstractmethod
    def set_owner(self, path: Path, uid: int, gid: int) -> None:
        """Transfer ownership of a passthrough handle."""
