#!/usr/bin/env python3
"""QEMU session manager.

Builds the QEMU command line for an ephemeral passthrough VM, launches it in
its own process group, and supervises it until the guest powers off.
"""

import logging
import os
import shlex
import signal
import subprocess
import time
from pathlib import Path
from typing import List, Optional

from pcibisect.device.binder import DeviceBinder
from pcibisect.exceptions import SessionCrash, SessionPrecondition, SessionTimeout
from pcibisect.vm.base import (
    SessionConfig,
    SessionHandle,
    SessionManager,
    SessionOutcome,
    SessionState,
)
from pcibisect.vm.console import ConsoleCapture


logger = logging.getLogger(__name__)

# Constants
DEFAULT_SHUTDOWN_TIMEOUT = 10.0
NETDEV_ID = "net0"


def _drive_format(path: str) -> str:
    return "qcow2" if path.endswith(".qcow2") else "raw"


def build_command(config: SessionConfig) -> List[str]:
    """Build the QEMU argv for a session.

    Args:
        config: Session configuration

    Returns:
        Command line as a list of arguments
    """
    vm = config.vm
    cmd = [vm.qemu_binary, "-machine", vm.machine, "-cpu", vm.cpu]
    if vm.enable_kvm:
        cmd.append("-enable-kvm")

    cmd += [
        "-m", str(vm.memory),
        "-smp", str(vm.cpus),
        "-nographic",
        "-no-reboot",
    ]

    for disk in vm.disks:
        cmd += ["-drive", f"file={disk},format={_drive_format(disk)},if=virtio"]

    if vm.kernel:
        cmd += ["-kernel", vm.kernel]
        if vm.initrd:
            cmd += ["-initrd", vm.initrd]
        cmd += ["-append", config.kernel_cmdline]
    elif vm.bios:
        cmd += ["-bios", vm.bios]

    cmd += ["-device", f"vfio-pci,host={config.group.target}"]

    if vm.port_forward:
        forward = vm.port_forward
        cmd += [
            "-netdev",
            f"user,id={NETDEV_ID},hostfwd=tcp::{forward.host_port}-:{forward.guest_port}",
            "-device",
            f"virtio-net-pci,netdev={NETDEV_ID}",
        ]

    cmd += list(vm.extra_args)
    return cmd


class QemuSession(SessionHandle):
    """Running QEMU process with its console capture.

    Attributes:
        process: QEMU child process (leader of its own process group)
        console: Console capture of the merged stdout/stderr
        shutdown_timeout: Grace period between terminate and kill
    """

    def __init__(
        self,
        config: SessionConfig,
        process: subprocess.Popen,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
    ) -> None:
        super().__init__(config)
        self.process = process
        self.shutdown_timeout = shutdown_timeout
        self.start_time = time.monotonic()
        self.state = SessionState.BOOTING
        self._entrypoint_marker = (
            f"Run {config.entrypoint} as init process" if config.entrypoint else None
        )
        self.console = ConsoleCapture(
            process.stdout,
            name=f"vm-group{config.group.group_id}",
            log_path=config.console_log,
            line_callback=self._on_console_line,
        )
        self.console.start()

    def _on_console_line(self, line: str) -> None:
        if (
            self.state == SessionState.BOOTING
            and self._entrypoint_marker
            and self._entrypoint_marker in line
        ):
            self.state = SessionState.RUNNING_ENTRYPOINT
            logger.info(f"Guest started {self.config.entrypoint}")

    def _signal_group(self, signum: int) -> None:
        try:
            os.killpg(self.process.pid, signum)
        except ProcessLookupError:
            pass

    def read_output(self) -> bytes:
        return self.console.get_output()

    def wait(self, timeout: float) -> SessionOutcome:
        try:
            returncode = self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Guest did not power off within {timeout}s, killing VM")
            self.kill()
            raise SessionTimeout(timeout, self.read_output()) from None

        self.console.join()
        if self.state != SessionState.KILLED:
            self.state = SessionState.EXITED

        output = self.read_output()
        duration = time.monotonic() - self.start_time
        logger.info(f"VM exited with status {returncode} after {duration:.1f}s")

        if returncode != 0:
            raise SessionCrash(returncode, output)

        return SessionOutcome(
            returncode=returncode, output=output, duration=duration, state=self.state
        )

    def stop(self) -> None:
        if self.process.poll() is None:
            logger.info("Stopping VM")
            self._signal_group(signal.SIGTERM)
            try:
                self.process.wait(timeout=self.shutdown_timeout)
            except subprocess.TimeoutExpired:
                logger.warning(f"VM ignored SIGTERM for {self.shutdown_timeout}s")
                self.kill()
                return
        self.console.join()
        self.state = SessionState.KILLED

    def kill(self) -> None:
        if self.process.poll() is None:
            logger.info(f"Killing VM (pid {self.process.pid})")
            self._signal_group(signal.SIGKILL)
            self.process.wait()
        self.console.join()
        self.state = SessionState.KILLED


class QemuSessionManager(SessionManager):
    """Session manager launching QEMU system emulators."""

    def __init__(
        self, binder: DeviceBinder, shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    ) -> None:
        """Initialize QEMU session manager.

        Args:
            binder: Device binder used to verify the group is attached
            shutdown_timeout: Grace period between terminate and kill in seconds
        """
        super().__init__(binder)
        self.shutdown_timeout = shutdown_timeout

    @staticmethod
    def _check_images(config: SessionConfig) -> None:
        vm = config.vm
        images: List[Optional[str]] = [*vm.disks, vm.kernel, vm.initrd, vm.bios]
        for image in images:
            if image and not Path(image).exists():
                raise SessionPrecondition(f"VM image not found: {image}")

    def _launch(self, config: SessionConfig) -> SessionHandle:
        self._check_images(config)
        cmd = build_command(config)
        if not config.vm.kernel:
            logger.warning("No kernel configured, boot arguments are left to the guest bootloader")
        logger.info(f"Launching VM: {shlex.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            raise SessionPrecondition(f"Cannot execute {cmd[0]}: {exc}") from exc

        return QemuSession(config, process, shutdown_timeout=self.shutdown_timeout)
