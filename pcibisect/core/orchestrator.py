#!/usr/bin/env python3
"""Step Driver.

Runs one bisection step against the passthrough device: build the revision,
boot an ephemeral VM with the guest oracle as init, classify the console
output, and restore the workspace whatever happened.
"""

import logging
import os
import signal
import subprocess
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence

from pcibisect.config.config import HarnessConfig
from pcibisect.core.classifier import BuildOutcome, StepResult, Verdict, classify
from pcibisect.core.oracle import GuestOracle
from pcibisect.core.workspace import Workspace
from pcibisect.device.base import IsolationGroup
from pcibisect.device.binder import DeviceBinder
from pcibisect.exceptions import (
    BindConflict,
    BuildFailure,
    ConfigError,
    DatabaseError,
    InconclusiveError,
    SessionCrash,
    SessionTimeout,
    StepInterrupted,
)
from pcibisect.persistence.state_manager import StateManager
from pcibisect.vm.base import SessionConfig, SessionHandle, SessionManager, SessionOutcome


logger = logging.getLogger(__name__)

# Constants
ABORT_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)
BUILD_LOG_TAIL_LINES = 20


class StepState(Enum):
    """Step Driver state."""

    IDLE = "idle"
    BUILDING = "building"
    TESTING = "testing"
    CLASSIFYING = "classifying"
    CLEANING = "cleaning"
    DONE = "done"


@contextmanager
def abort_on_signals(signals: Sequence[int] = ABORT_SIGNALS) -> Iterator[None]:
    """Turn termination signals into StepInterrupted for the duration of a step.

    Only the first signal raises; later ones are ignored so that teardown
    is not interrupted. Previous handlers are restored on exit. Must be
    used from the main thread.
    """
    previous = {signum: signal.getsignal(signum) for signum in signals}

    def _handler(signum, _frame):
        for other in signals:
            signal.signal(other, signal.SIG_IGN)
        logger.warning(f"Received signal {signum}, tearing down the step")
        raise StepInterrupted(signum)

    for signum in signals:
        signal.signal(signum, _handler)
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StepDriver:
    """Runs one build/boot/classify cycle per revision.

    The Cleaning state runs on every path, including unexpected faults and
    interrupts. Attach always precedes Start, and Kill plus Detach follow
    every session whether it succeeded or not.

    Attributes:
        config: Harness configuration
        group: Isolation group of the passthrough target
        binder: Device binder owning the group's driver state
        sessions: VM session manager
        workspace: Tree under test
        oracle: Guest oracle contract
        journal: Diagnostic journal (None to disable)
        run_id: Journal run the steps are recorded under
        state: Current step state
    """

    def __init__(
        self,
        config: HarnessConfig,
        group: IsolationGroup,
        binder: DeviceBinder,
        sessions: SessionManager,
        workspace: Workspace,
        oracle: GuestOracle,
        journal: Optional[StateManager] = None,
        run_id: Optional[int] = None,
    ) -> None:
        self.config = config
        self.group = group
        self.binder = binder
        self.sessions = sessions
        self.workspace = workspace
        self.oracle = oracle
        self.journal = journal
        self.run_id = run_id
        self.state = StepState.IDLE

    def run_step(self, revision: Optional[str] = None, skip_build: bool = False) -> StepResult:
        """Run one bisection step on the workspace's current revision.

        Args:
            revision: Label reported for the revision (default: the commit id)
            skip_build: Boot the existing images without building

        Returns:
            StepResult with verdict and exit code

        Raises:
            FatalHarnessError: If the run must be aborted (after cleanup)
            StepInterrupted: If a termination signal arrived (after cleanup)
        """
        snapshot = self.workspace.snapshot()
        label = revision or snapshot.head
        logger.info(f"=== Step: {snapshot.short} {snapshot.subject} ===")

        step_id = self._journal(self._start_step, label, snapshot.subject)
        started = time.monotonic()
        result: Optional[StepResult] = None
        try:
            result = self._execute(label, skip_build, step_id)
        finally:
            self.state = StepState.CLEANING
            try:
                self.workspace.restore(snapshot)
            finally:
                self.state = StepState.DONE
                self._journal(self._finish_step, step_id, result, started)

        if result.verdict == Verdict.INCONCLUSIVE:
            logger.warning(f"Revision {snapshot.short} is untestable: {result.reason}")
        else:
            logger.info(f"Revision {snapshot.short} is {result.verdict.value}: {result.reason}")
        return result

    def _execute(self, revision: str, skip_build: bool, step_id: Optional[int]) -> StepResult:
        self.state = StepState.BUILDING
        if skip_build:
            logger.info("Skipping build")
        else:
            try:
                self._build(step_id)
            except BuildFailure as exc:
                logger.warning(f"Build failed: {exc}")
                self.state = StepState.CLASSIFYING
                return classify(revision, BuildOutcome.FAILED, self.oracle, error=exc)

        self.state = StepState.TESTING
        try:
            outcome = self._test(revision, step_id)
        except (SessionTimeout, SessionCrash) as exc:
            self.state = StepState.CLASSIFYING
            return classify(revision, BuildOutcome.SUCCEEDED, self.oracle, error=exc)

        self.state = StepState.CLASSIFYING
        return classify(revision, BuildOutcome.SUCCEEDED, self.oracle, output=outcome.output)

    def _build(self, step_id: Optional[int]) -> None:
        """Build the revision in the workspace.

        Raises:
            BuildFailure: If the build fails, times out, or produces no kernel
            ConfigError: If the build command cannot be executed at all
        """
        command = self.config.build.command
        if not command:
            logger.info("No build command configured")
            return

        timeout = self.config.build_timeout
        logger.info(f"Building in {self.workspace.path} (timeout {timeout}s)")
        try:
            process = subprocess.Popen(
                command,
                shell=isinstance(command, str),
                cwd=self.workspace.path,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            raise ConfigError(f"Cannot execute build command {command!r}: {exc}") from exc

        try:
            output, _ = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            output, _ = process.communicate()
            self._journal(self._store_log, step_id, "build", output, None)
            raise BuildFailure(f"build timed out after {timeout}s", output) from None
        except BaseException:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            process.wait()
            raise

        self._journal(self._store_log, step_id, "build", output, process.returncode)

        if process.returncode != 0:
            tail = output.decode("utf-8", errors="replace").splitlines()[-BUILD_LOG_TAIL_LINES:]
            for line in tail:
                logger.debug(f"build: {line}")
            raise BuildFailure(f"build exited with status {process.returncode}", output)

        kernel = self.config.vm.kernel
        if kernel and not Path(kernel).exists():
            raise BuildFailure(f"kernel image {kernel} not found after build", output)

        logger.info("Build succeeded")

    def _console_log_path(self, revision: str) -> Optional[Path]:
        log_dir = Path(self.config.console_log_dir)
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning(f"Cannot create console log directory {log_dir}: {exc}")
            return None
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        return log_dir / f"{stamp}-{revision[:12]}.log"

    def _test(self, revision: str, step_id: Optional[int]) -> SessionOutcome:
        """Attach the group, boot the guest, and wait for it to power off.

        Raises:
            SessionTimeout: If the guest did not power off in time
            SessionCrash: If the VM process terminated abnormally
        """
        session: Optional[SessionHandle] = None
        try:
            self.binder.attach(self.group)
            session = self.sessions.start(
                SessionConfig(
                    vm=self.config.vm,
                    group=self.group,
                    kernel_cmdline=self.oracle.kernel_cmdline(
                        self.config.vm.root_device, self.config.vm.append
                    ),
                    console_log=self._console_log_path(revision),
                    entrypoint=self.oracle.entrypoint,
                )
            )
            outcome = session.wait(self.config.session_timeout)
        except InconclusiveError as exc:
            self._journal(self._store_log, step_id, "console", exc.output, None)
            self._teardown(session)
            raise
        except BaseException:
            self._teardown(session, propagating=True)
            raise

        self._journal(self._store_log, step_id, "console", outcome.output, outcome.returncode)
        self._teardown(session)
        return outcome

    def _teardown(self, session: Optional[SessionHandle], propagating: bool = False) -> None:
        """Kill the session and return the group to the host.

        Args:
            session: Session to kill (None if it never started)
            propagating: A fatal error is already propagating; detach
                failures are logged instead of replacing it
        """
        if session is not None:
            self.sessions.kill(session)
        try:
            self.binder.detach(self.group)
        except BindConflict as exc:
            if not propagating:
                raise
            logger.error(f"Detach failed during teardown: {exc}")

    def _journal(self, action: Callable, *args):
        """Run a journal write; failures never affect the step."""
        if self.journal is None:
            return None
        try:
            return action(*args)
        except DatabaseError as exc:
            logger.warning(f"Journal write failed: {exc}")
            return None

    def _start_step(self, revision: str, subject: str) -> Optional[int]:
        if self.run_id is None:
            self.run_id = self.journal.get_or_create_run(
                self.config.device.address, self.group.group_id
            )
        return self.journal.create_step(self.run_id, revision, subject)

    def _finish_step(
        self, step_id: Optional[int], result: Optional[StepResult], started: float
    ) -> None:
        if step_id is None:
            return
        fields = {"end_time": _now(), "duration": int(time.monotonic() - started)}
        if result is None:
            fields.update(verdict="aborted", reason="step aborted by a fatal error or signal")
        else:
            fields.update(
                build_result=result.build.value,
                verdict=result.verdict.value,
                exit_code=result.exit_code,
                reason=result.reason,
            )
        self.journal.update_step(step_id, **fields)

    def _store_log(
        self, step_id: Optional[int], log_type: str, content: bytes, exit_code: Optional[int]
    ) -> None:
        if step_id is None or not content:
            return
        self.journal.store_step_log(step_id, log_type, content, exit_code)
