#!/usr/bin/env python3
"""Abstract base classes for VM sessions.

Defines the session lifecycle and the manager contract: a session may only
start on an attached isolation group, and only one session per group may be
active at a time.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from pcibisect.config.config import VMConfig
from pcibisect.device.base import IsolationGroup
from pcibisect.device.binder import DeviceBinder
from pcibisect.exceptions import SessionPrecondition


logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Lifecycle states of a VM session."""

    NOT_STARTED = "not-started"
    BOOTING = "booting"
    RUNNING_ENTRYPOINT = "running-entrypoint"
    EXITED = "exited"
    KILLED = "killed"


TERMINAL_STATES = (SessionState.EXITED, SessionState.KILLED)


@dataclass
class SessionConfig:
    """Everything needed to launch one VM session.

    Attributes:
        vm: Machine resources and boot images
        group: Isolation group passed through to the guest
        kernel_cmdline: Boot argument string (root device, init= override)
        console_log: File receiving a copy of the guest console
        entrypoint: Guest init path, used to detect when the oracle starts
    """

    vm: VMConfig
    group: IsolationGroup
    kernel_cmdline: str
    console_log: Optional[Path] = None
    entrypoint: Optional[str] = None


@dataclass
class SessionOutcome:
    """Result of a VM session that terminated on its own."""

    returncode: int
    output: bytes
    duration: float
    state: SessionState


class SessionHandle(ABC):
    """Handle on a running VM session.

    Attributes:
        config: Configuration the session was started with
        state: Current lifecycle state
    """

    def __init__(self, config: SessionConfig) -> None:
        self.config = config
        self.state = SessionState.NOT_STARTED

    @property
    def group_id(self) -> int:
        return self.config.group.group_id

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @abstractmethod
    def read_output(self) -> bytes:
        """Get the guest console output captured so far."""

    @abstractmethod
    def wait(self, timeout: float) -> SessionOutcome:
        """Wait for the guest to terminate.

        Args:
            timeout: Seconds to wait before force-terminating the guest

        Returns:
            SessionOutcome of a clean termination

        Raises:
            SessionTimeout: If the guest did not terminate in time (it is killed)
            SessionCrash: If the VM process terminated abnormally
        """

    @abstractmethod
    def stop(self) -> None:
        """Terminate the guest gracefully, escalating to kill."""

    @abstractmethod
    def kill(self) -> None:
        """Force-terminate the guest immediately."""


class SessionManager(ABC):
    """Launches VM sessions and enforces session preconditions.

    Attributes:
        binder: Device binder used to verify the group is attached
    """

    def __init__(self, binder: DeviceBinder) -> None:
        self.binder = binder
        self._active: Dict[int, SessionHandle] = {}

    def active_session(self, group_id: int) -> Optional[SessionHandle]:
        """Get the non-terminal session holding a group, if any."""
        session = self._active.get(group_id)
        if session and not session.is_terminal:
            return session
        return None

    def start(self, config: SessionConfig) -> SessionHandle:
        """Start a VM session with the configured group attached.

        Never attaches the group itself.

        Args:
            config: Session configuration

        Returns:
            Handle on the launched session

        Raises:
            SessionPrecondition: If the group is not attached or already in use
        """
        group = config.group
        if self.active_session(group.group_id):
            raise SessionPrecondition(
                f"A session is already active for IOMMU group {group.group_id}"
            )
        if not self.binder.is_attached(group):
            raise SessionPrecondition(
                f"{group} is not attached to {self.binder.passthrough_driver}"
            )

        session = self._launch(config)
        self._active[group.group_id] = session
        return session

    def stop(self, session: SessionHandle) -> None:
        """Stop a session gracefully."""
        if not session.is_terminal:
            session.stop()

    def kill(self, session: SessionHandle) -> None:
        """Kill a session immediately."""
        if not session.is_terminal:
            session.kill()

    def shutdown(self) -> None:
        """Kill every session that is still running."""
        for session in list(self._active.values()):
            if not session.is_terminal:
                logger.warning(f"Killing leftover session for IOMMU group {session.group_id}")
                session.kill()

    @abstractmethod
    def _launch(self, config: SessionConfig) -> SessionHandle:
        """Launch the VM process for a validated configuration."""
