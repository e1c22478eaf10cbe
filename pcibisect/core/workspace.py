#!/usr/bin/env python3
"""Workspace guard for the revision-controlled tree under test.

Records the tree's commit and its untracked files before a step, and
restores both afterwards: tracked files are reset, and files the step
created are removed while files that already existed are kept.
"""

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, List, Sequence, Tuple

from pcibisect.exceptions import WorkspaceError


logger = logging.getLogger(__name__)

# Constants
GIT_TIMEOUT = 300
SHORT_COMMIT_LENGTH = 7


@dataclass(frozen=True)
class WorkspaceSnapshot:
    """State of the workspace before a step.

    Attributes:
        head: Full commit id checked out
        subject: Subject line of that commit
        untracked: Untracked and ignored files present before the step
    """

    head: str
    subject: str
    untracked: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def short(self) -> str:
        return self.head[:SHORT_COMMIT_LENGTH]


class Workspace:
    """Git working tree under test.

    Attributes:
        path: Root of the working tree
        clean_ignored: Also remove ignored files (build artifacts) the step created
        clean_exclude: Patterns never removed by the restore
    """

    def __init__(
        self,
        path: str,
        clean_ignored: bool = True,
        clean_exclude: Sequence[str] = (),
    ) -> None:
        self.path = Path(path)
        self.clean_ignored = clean_ignored
        self.clean_exclude = list(clean_exclude)

    def git(self, *args: str) -> str:
        """Run a git command in the workspace.

        Returns:
            Standard output of the command

        Raises:
            WorkspaceError: If git fails or cannot be executed
        """
        cmd = ["git", "-C", str(self.path), *args]
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=GIT_TIMEOUT, check=False
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise WorkspaceError(f"git {' '.join(args)} failed: {exc}") from exc

        if result.returncode != 0:
            raise WorkspaceError(
                f"git {' '.join(args)} failed (rc={result.returncode}): {result.stderr.strip()}"
            )
        return result.stdout

    def describe(self, revision: str = "HEAD") -> Tuple[str, str]:
        """Resolve a revision to its full commit id and subject line."""
        commit = self.git("rev-parse", "--verify", f"{revision}^{{commit}}").strip()
        subject = self.git("log", "-1", "--format=%s", commit).strip()
        return commit, subject

    def untracked_files(self, include_ignored: bool = True) -> List[str]:
        """List files git does not track, relative to the workspace root.

        Args:
            include_ignored: Also list files matched by .gitignore
        """
        args = ["ls-files", "--others", "-z"]
        if not include_ignored:
            args.append("--exclude-standard")
        return [path for path in self.git(*args).split("\0") if path]

    def snapshot(self) -> WorkspaceSnapshot:
        """Record the current commit and the files already lying around."""
        head, subject = self.describe()
        return WorkspaceSnapshot(
            head=head, subject=subject, untracked=frozenset(self.untracked_files())
        )

    def dirty_paths(self, include_ignored: bool = True) -> List[str]:
        """List paths with uncommitted or untracked changes.

        Ignored files are included when the restore also removes them.
        """
        output = self.git("status", "--porcelain", "--untracked-files=no")
        paths = [line[3:] for line in output.splitlines() if line.strip()]
        paths += self.untracked_files(include_ignored and self.clean_ignored)
        return [path for path in paths if not self._excluded(path)]

    def _excluded(self, path: str) -> bool:
        candidate = Path(path.rstrip("/"))
        return any(
            part.match(pattern.strip("/"))
            for part in (candidate, *candidate.parents)
            if part.parts
            for pattern in self.clean_exclude
        )

    def _remove_new_files(self, snapshot: WorkspaceSnapshot) -> None:
        """Delete untracked files that appeared after the snapshot."""
        created = [
            path
            for path in self.untracked_files(self.clean_ignored)
            if path not in snapshot.untracked and not self._excluded(path)
        ]
        if not created:
            return

        logger.debug(f"Removing {len(created)} file(s) created during the step")
        parents = set()
        for path in created:
            target = self.path / path
            try:
                if target.is_dir() and not target.is_symlink():
                    shutil.rmtree(target)
                else:
                    target.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                raise WorkspaceError(f"Cannot remove {target}: {exc}") from exc
            parents.update(Path(path.rstrip("/")).parents)

        # Deepest first so nested directories empty out before their parents
        for parent in sorted(parents, key=lambda p: len(p.parts), reverse=True):
            if not parent.parts:
                continue
            directory = self.path / parent
            try:
                directory.rmdir()
            except OSError:
                continue

    def restore(self, snapshot: WorkspaceSnapshot) -> None:
        """Restore the workspace to the state recorded before the step.

        Tracked files are reset to the recorded commit. Untracked files the
        step created are removed; untracked files present in the snapshot
        are kept as they are.

        Args:
            snapshot: State recorded before the step

        Raises:
            WorkspaceError: If the tree cannot be restored
        """
        logger.info(f"Restoring workspace to {snapshot.short}")
        self.git("reset", "--hard", "--quiet", snapshot.head)
        self._remove_new_files(snapshot)

        remaining = [path for path in self.dirty_paths() if path not in snapshot.untracked]
        if remaining:
            raise WorkspaceError(
                f"Workspace still has {len(remaining)} changed path(s) after restore: "
                f"{', '.join(remaining[:5])}"
            )

        head = self.git("rev-parse", "--verify", "HEAD").strip()
        if head != snapshot.head:
            raise WorkspaceError(f"Workspace HEAD is {head}, expected {snapshot.head}")
