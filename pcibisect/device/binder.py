#!/usr/bin/env python3
"""Device binder.

Moves every endpoint of an isolation group between its host driver and the
passthrough driver. Bridges are never touched.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from pcibisect.config.config import DEFAULT_PASSTHROUGH_DRIVER
from pcibisect.device.base import HostInterface, IsolationGroup
from pcibisect.exceptions import BindConflict


logger = logging.getLogger(__name__)

# Constants
DEFAULT_BIND_TIMEOUT = 5.0
POLL_INTERVAL = 0.1


@dataclass
class FunctionBinding:
    """Current driver ownership of one group endpoint."""

    address: str
    driver: Optional[str]
    passthrough: bool

    @property
    def owner(self) -> str:
        return self.driver or "none"


class DeviceBinder:
    """Switches driver ownership of an isolation group.

    Both operations are idempotent. Pre-attach drivers are remembered for
    the lifetime of the binder so that detach can restore them when the
    kernel's reprobe does not.

    Attributes:
        host: Host control surface
        passthrough_driver: Driver that owns the group during passthrough
        bind_timeout: Seconds allowed for a driver change to settle
        owner_uid: User receiving the group handle (None to skip)
        owner_gid: Group receiving the group handle
    """

    def __init__(
        self,
        host: HostInterface,
        passthrough_driver: str = DEFAULT_PASSTHROUGH_DRIVER,
        bind_timeout: float = DEFAULT_BIND_TIMEOUT,
        owner_uid: Optional[int] = None,
        owner_gid: Optional[int] = None,
    ) -> None:
        """Initialize device binder.

        Args:
            host: Host control surface
            passthrough_driver: Driver that owns the group during passthrough
            bind_timeout: Seconds allowed for a driver change to settle
            owner_uid: User receiving ownership of the group handle
            owner_gid: Group receiving ownership of the group handle
        """
        self.host = host
        self.passthrough_driver = passthrough_driver
        self.bind_timeout = bind_timeout
        self.owner_uid = owner_uid
        self.owner_gid = owner_gid
        self._original_drivers: Dict[str, Optional[str]] = {}

    def _wait_for_driver(self, address: str, expected: Optional[str]) -> bool:
        """Wait until a function reports the expected driver."""
        deadline = time.monotonic() + self.bind_timeout
        while True:
            if self.host.current_driver(address) == expected:
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(POLL_INTERVAL)

    def _wait_for_path(self, path: Path) -> bool:
        deadline = time.monotonic() + self.bind_timeout
        while not path.exists():
            if time.monotonic() >= deadline:
                return False
            time.sleep(POLL_INTERVAL)
        return True

    def status(self, group: IsolationGroup) -> List[FunctionBinding]:
        """Report the current owner of every group endpoint.

        Args:
            group: Isolation group to inspect

        Returns:
            One FunctionBinding per endpoint
        """
        bindings = []
        for member in group.endpoints:
            driver = self.host.current_driver(member.address)
            bindings.append(
                FunctionBinding(
                    address=member.address,
                    driver=driver,
                    passthrough=driver == self.passthrough_driver,
                )
            )
        return bindings

    def is_attached(self, group: IsolationGroup) -> bool:
        """Check whether every endpoint is owned by the passthrough driver."""
        return all(binding.passthrough for binding in self.status(group))

    def _attach_member(self, address: str) -> None:
        current = self.host.current_driver(address)
        self._original_drivers.setdefault(address, current)

        logger.info(f"Binding {address} to {self.passthrough_driver} (was {current or 'none'})")
        try:
            self.host.set_driver_override(address, self.passthrough_driver)
            if current:
                self.host.unbind(address, current)
                if not self._wait_for_driver(address, None):
                    raise BindConflict(
                        address, f"{current} did not release the device (in use?)"
                    )
            self.host.bind(address, self.passthrough_driver)
        except OSError as exc:
            raise BindConflict(address, str(exc)) from exc

        if not self._wait_for_driver(address, self.passthrough_driver):
            raise BindConflict(
                address, f"binding to {self.passthrough_driver} did not complete"
            )

    def attach(self, group: IsolationGroup) -> None:
        """Bind every endpoint of the group to the passthrough driver.

        Members already owned by the passthrough driver are left alone. If
        any member cannot be moved, or the attach is interrupted, members
        moved by this call are returned to the host before the error is
        raised.

        Args:
            group: Isolation group to attach

        Raises:
            BindConflict: If a member cannot be unbound or bound
        """
        if not group.endpoints:
            raise BindConflict(group.target, f"{group} contains no rebindable functions")

        for bridge in group.bridges:
            logger.debug(f"Skipping bridge {bridge.address}")

        moved: List[str] = []
        try:
            for member in group.endpoints:
                if self.host.current_driver(member.address) == self.passthrough_driver:
                    logger.debug(f"{member.address} already bound to {self.passthrough_driver}")
                    self._original_drivers.setdefault(member.address, self.passthrough_driver)
                    continue
                moved.append(member.address)
                self._attach_member(member.address)

            handle = self.host.group_handle(group.group_id)
            if not self._wait_for_path(handle):
                raise BindConflict(group.target, f"passthrough handle {handle} did not appear")

            if self.owner_uid is not None:
                gid = self.owner_gid if self.owner_gid is not None else -1
                try:
                    self.host.set_owner(handle, self.owner_uid, gid)
                except OSError as exc:
                    raise BindConflict(
                        group.target, f"cannot change owner of {handle}: {exc}"
                    ) from exc
        except BaseException as exc:
            logger.error(f"Attach of {group} failed ({exc!r}), returning moved members to host")
            for error in self._return_members(moved):
                logger.error(f"Rollback left {error.address} unrestored: {error}")
            raise

        logger.info(f"Attached {group} to {self.passthrough_driver}")

    def _detach_member(self, address: str) -> None:
        if self._original_drivers.get(address) == self.passthrough_driver:
            del self._original_drivers[address]
            logger.info(f"{address} was bound to {self.passthrough_driver} before attach, leaving it")
            return

        self.host.set_driver_override(address, "")

        current = self.host.current_driver(address)
        if current == self.passthrough_driver:
            self.host.unbind(address, self.passthrough_driver)
            self._wait_for_driver(address, None)
            current = None

        if current is None:
            self.host.reprobe(address)

        original = self._original_drivers.pop(address, None)
        if original and self.host.current_driver(address) is None:
            logger.info(f"Reprobe left {address} unbound, restoring {original}")
            self.host.bind(address, original)

        logger.info(f"Returned {address} to {self.host.current_driver(address) or 'no driver'}")

    def _return_members(self, addresses: List[str]) -> List[BindConflict]:
        """Detach each address, attempting all of them.

        Returns:
            One BindConflict per member that could not be returned

        Raises:
            BaseException: The first interrupt seen, after every member was attempted
        """
        errors: List[BindConflict] = []
        interrupt: Optional[BaseException] = None
        for address in addresses:
            try:
                self._detach_member(address)
            except OSError as exc:
                logger.error(f"Failed to return {address} to host: {exc}")
                errors.append(BindConflict(address, str(exc)))
            except BaseException as exc:
                logger.error(f"Interrupted while returning {address} to host: {exc!r}")
                if interrupt is None:
                    interrupt = exc
        if interrupt is not None:
            raise interrupt
        return errors

    def detach(self, group: IsolationGroup) -> None:
        """Return every endpoint of the group to its pre-attach driver.

        Every member is attempted even if an earlier one fails or the
        detach is interrupted. Members that were already owned by the
        passthrough driver before attach stay bound to it.

        Args:
            group: Isolation group to detach

        Raises:
            BindConflict: First failure encountered, after all members were attempted
        """
        errors = self._return_members([member.address for member in group.endpoints])
        if errors:
            raise errors[0]

        logger.info(f"Detached {group}")
