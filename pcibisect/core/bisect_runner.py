#!/usr/bin/env python3
"""Bisection-run wrapper.

Drives an external ``git bisect run`` search with the step command as its
test script, then resets the search and returns the group to the host.
"""

import logging
import os
import re
import subprocess
import sys
from datetime import datetime, timezone
from typing import List, Optional

from pcibisect.core.workspace import Workspace
from pcibisect.device.base import IsolationGroup
from pcibisect.device.binder import DeviceBinder
from pcibisect.exceptions import BindConflict, DatabaseError, WorkspaceError
from pcibisect.persistence.state_manager import StateManager


logger = logging.getLogger(__name__)

# Constants
RUN_ID_ENV = "PCIBISECT_RUN_ID"
FIRST_BAD_PATTERN = re.compile(r"^# first bad commit: \[([0-9a-f]+)\]", re.MULTILINE)


def parse_first_bad(bisect_log: str) -> Optional[str]:
    """Extract the first bad commit from ``git bisect log`` output."""
    match = FIRST_BAD_PATTERN.search(bisect_log)
    return match.group(1) if match else None


class BisectRunner:
    """Runs a complete search over the workspace.

    Attributes:
        workspace: Tree under test
        binder: Device binder, used for the final detach
        group: Isolation group of the passthrough target
        config_path: Configuration file handed to every step
        journal: Diagnostic journal (None to disable)
        verbose: Pass --verbose to the step command
        log_file: Operator log file passed to the step command
    """

    def __init__(
        self,
        workspace: Workspace,
        binder: DeviceBinder,
        group: IsolationGroup,
        config_path: str,
        journal: Optional[StateManager] = None,
        verbose: bool = False,
        log_file: Optional[str] = None,
    ) -> None:
        self.workspace = workspace
        self.binder = binder
        self.group = group
        self.config_path = config_path
        self.journal = journal
        self.verbose = verbose
        self.log_file = log_file

    def step_command(self) -> List[str]:
        """Command line git runs for every candidate revision."""
        cmd = [sys.executable, "-m", "pcibisect.cli", "-c", self.config_path]
        if self.verbose:
            cmd.append("--verbose")
        if self.log_file:
            cmd += ["--log-file", self.log_file]
        cmd.append("step")
        return cmd

    def _create_run(self, good: str, bad: str) -> Optional[int]:
        if self.journal is None:
            return None
        try:
            return self.journal.create_run(
                self.group.target, self.group.group_id, good_revision=good, bad_revision=bad
            )
        except DatabaseError as exc:
            logger.warning(f"Journal write failed: {exc}")
            return None

    def _finish_run(self, run_id: Optional[int], status: str, first_bad: Optional[str]) -> None:
        if self.journal is None or run_id is None:
            return
        try:
            self.journal.update_run(
                run_id,
                status=status,
                first_bad_revision=first_bad,
                end_time=datetime.now(timezone.utc).isoformat(),
            )
        except DatabaseError as exc:
            logger.warning(f"Journal write failed: {exc}")

    def run(self, good: str, bad: str, first_parent: bool = False) -> Optional[str]:
        """Bisect between a good and a bad revision.

        Args:
            good: Known good revision (older)
            bad: Known bad revision (newer)
            first_parent: Follow only the first parent of merge commits

        Returns:
            First bad commit id, or None if the search did not finish

        Raises:
            WorkspaceError: If the workspace has local changes or git fails
            BindConflict: If the final detach fails
        """
        dirty = self.workspace.dirty_paths(include_ignored=False)
        if dirty:
            raise WorkspaceError(
                f"Workspace has {len(dirty)} uncommitted path(s), commit or stash them first: "
                f"{', '.join(dirty[:5])}"
            )

        good_commit, _ = self.workspace.describe(good)
        bad_commit, _ = self.workspace.describe(bad)
        logger.info(f"Bisecting {self.group} between {good_commit[:7]} and {bad_commit[:7]}")

        run_id = self._create_run(good_commit, bad_commit)
        status = "aborted"
        first_bad: Optional[str] = None

        start_args = ["bisect", "start"]
        if first_parent:
            start_args.append("--first-parent")
        self.workspace.git(*start_args, bad_commit, good_commit)
        try:
            env = dict(os.environ)
            if run_id is not None:
                env[RUN_ID_ENV] = str(run_id)

            cmd = ["git", "-C", str(self.workspace.path), "bisect", "run", *self.step_command()]
            logger.info(f"Running: {' '.join(cmd)}")
            process = subprocess.Popen(cmd, env=env)
            try:
                returncode = process.wait()
            except KeyboardInterrupt:
                logger.warning("Interrupted, waiting for the running step to clean up")
                process.wait()
                raise

            first_bad = parse_first_bad(self.workspace.git("bisect", "log"))
            if first_bad:
                status = "completed"
                logger.info(f"First bad commit: {first_bad}")
            else:
                status = "failed"
                logger.error(f"Bisection did not finish (git bisect run exited {returncode})")
        finally:
            self._finish_run(run_id, status, first_bad)
            try:
                self.workspace.git("bisect", "reset")
            except WorkspaceError as exc:
                logger.error(f"git bisect reset failed: {exc}")
            try:
                self.binder.detach(self.group)
            except BindConflict as exc:
                logger.error(f"Final detach failed: {exc}")
                if status != "aborted":
                    raise

        return first_bad
