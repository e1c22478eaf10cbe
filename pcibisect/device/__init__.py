"""PCI topology resolution and driver binding for passthrough."""

from pcibisect.device.base import (
    FunctionKind,
    GroupMember,
    HostInterface,
    IsolationGroup,
    normalize_address,
)
from pcibisect.device.binder import DeviceBinder, FunctionBinding
from pcibisect.device.sysfs import SysfsHost
from pcibisect.device.topology import resolve_group


__all__ = [
    # Types
    "FunctionKind",
    "GroupMember",
    "IsolationGroup",
    "normalize_address",
    # Host control surface
    "HostInterface",
    "SysfsHost",
    # Operations
    "DeviceBinder",
    "FunctionBinding",
    "resolve_group",
]
