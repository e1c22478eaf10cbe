#!/usr/bin/env python3
"""Isolation-group resolver.

Enumerates the PCI functions that must move together with a target device.
"""

import logging

from pcibisect.device.base import (
    FunctionKind,
    GroupMember,
    HostInterface,
    IsolationGroup,
    is_bridge_header,
    normalize_address,
)
from pcibisect.exceptions import DeviceNotFound, GroupUnavailable


logger = logging.getLogger(__name__)


def resolve_group(host: HostInterface, address: str) -> IsolationGroup:
    """Resolve the isolation group of a PCI function.

    Read-only: queries topology and classifies every member as a bridge
    or an endpoint from its header type.

    Args:
        host: Host control surface
        address: PCI address of the target function

    Returns:
        IsolationGroup containing the target and every function sharing its group

    Raises:
        DeviceNotFound: If the address does not name an existing function
        GroupUnavailable: If the host exposes no IOMMU group for the function
    """
    try:
        address = normalize_address(address)
    except ValueError as exc:
        raise DeviceNotFound(address) from exc

    if not host.device_exists(address):
        raise DeviceNotFound(address)

    group_id = host.iommu_group_of(address)
    if group_id is None:
        raise GroupUnavailable(address, "IOMMU disabled or device not isolated")

    addresses = host.group_devices(group_id)
    if address not in addresses:
        raise GroupUnavailable(address, f"IOMMU group {group_id} does not list the device")

    members = []
    for member_address in sorted(addresses):
        try:
            header = host.header_type(member_address)
        except OSError as exc:
            raise GroupUnavailable(
                address, f"cannot read header type of {member_address}: {exc}"
            ) from exc

        kind = FunctionKind.BRIDGE if is_bridge_header(header) else FunctionKind.ENDPOINT
        members.append(GroupMember(address=member_address, kind=kind))
        logger.debug(f"  {member_address}: {kind.value} (header 0x{header:02x})")

    group = IsolationGroup(group_id=group_id, target=address, members=tuple(members))
    logger.info(
        f"Resolved {group} for {address}: "
        f"{len(group.endpoints)} endpoint(s), {len(group.bridges)} bridge(s)"
    )
    return group
