#!/usr/bin/env python3
"""Error taxonomy for the passthrough bisection harness.

Errors split into two families. Fatal errors describe a configuration or
host problem and must abort the whole bisection run. Inconclusive errors
describe a single revision that could not be tested and are turned into a
skip verdict by the step driver.
"""

from typing import Optional


class HarnessError(Exception):
    """Base exception for all pcibisect errors."""


class FatalHarnessError(HarnessError):
    """Error that must abort the entire bisection run."""


class InconclusiveError(HarnessError):
    """Error that makes the current revision untestable.

    Attributes:
        output: Output captured before the failure (build log or guest console)
    """

    def __init__(self, message: str, output: bytes = b"") -> None:
        super().__init__(message)
        self.output = output


class ConfigError(FatalHarnessError):
    """Raised when the configuration file is missing or invalid."""


class DeviceNotFound(FatalHarnessError):
    """Raised when a PCI function address does not exist on the host."""

    def __init__(self, address: str) -> None:
        super().__init__(f"PCI device {address} not found")
        self.address = address


class GroupUnavailable(FatalHarnessError):
    """Raised when the host exposes no IOMMU group for a device."""

    def __init__(self, address: str, reason: Optional[str] = None) -> None:
        message = f"No IOMMU group available for {address}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.address = address


class BindConflict(FatalHarnessError):
    """Raised when a group member cannot be moved between drivers."""

    def __init__(self, address: str, reason: str) -> None:
        super().__init__(f"Cannot rebind {address}: {reason}")
        self.address = address
        self.reason = reason


class SessionPrecondition(FatalHarnessError):
    """Raised when a VM session is started in an invalid state."""


class WorkspaceError(FatalHarnessError):
    """Raised when the workspace cannot be inspected or restored."""


class SessionTimeout(InconclusiveError):
    """Raised when the guest does not power off within the allotted time."""

    def __init__(self, timeout: float, output: bytes = b"") -> None:
        super().__init__(f"Guest did not terminate within {timeout}s", output)
        self.timeout = timeout


class SessionCrash(InconclusiveError):
    """Raised when the VM process terminates abnormally."""

    def __init__(self, returncode: int, output: bytes = b"") -> None:
        if returncode < 0:
            message = f"VM process killed by signal {-returncode}"
        else:
            message = f"VM process exited with status {returncode}"
        super().__init__(message, output)
        self.returncode = returncode


class BuildFailure(InconclusiveError):
    """Raised when the revision under test fails to build."""


class DatabaseError(HarnessError):
    """Raised when the diagnostic journal cannot be read or written."""


class StepInterrupted(KeyboardInterrupt):
    """Raised when a termination signal arrives during a step.

    Derives from KeyboardInterrupt so that it bypasses ordinary error
    handling while Kill, Detach and workspace cleanup still run.

    Attributes:
        signum: Number of the signal that was received
    """

    def __init__(self, signum: int) -> None:
        super().__init__(f"Interrupted by signal {signum}")
        self.signum = signum
