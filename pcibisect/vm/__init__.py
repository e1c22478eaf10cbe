"""Ephemeral VM session management for device passthrough."""

from pcibisect.vm.base import (
    SessionConfig,
    SessionHandle,
    SessionManager,
    SessionOutcome,
    SessionState,
)
from pcibisect.vm.console import ConsoleCapture
from pcibisect.vm.qemu import QemuSession, QemuSessionManager, build_command


__all__ = [
    # Base classes and types
    "SessionConfig",
    "SessionHandle",
    "SessionManager",
    "SessionOutcome",
    "SessionState",
    # QEMU implementation
    "ConsoleCapture",
    "QemuSession",
    "QemuSessionManager",
    "build_command",
]
