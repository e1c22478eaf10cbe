#!/usr/bin/env python3
"""Result classification and the bisection exit-code contract."""

import logging
import signal
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pcibisect.core.oracle import GuestOracle
from pcibisect.exceptions import InconclusiveError


logger = logging.getLogger(__name__)

# Exit codes understood by git bisect run
EXIT_GOOD = 0
EXIT_BAD = 1
EXIT_SKIP = 125
EXIT_ABORT_BASE = 128
EXIT_FATAL = EXIT_ABORT_BASE + signal.SIGABRT


def abort_exit_code(signum: int) -> int:
    """Exit code that aborts the search after a termination signal."""
    return EXIT_ABORT_BASE + signum


class BuildOutcome(Enum):
    """Outcome of building the revision under test."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Verdict(Enum):
    """Oracle verdict for a revision."""

    GOOD = "good"
    BAD = "bad"
    INCONCLUSIVE = "inconclusive"


VERDICT_EXIT_CODES = {
    Verdict.GOOD: EXIT_GOOD,
    Verdict.BAD: EXIT_BAD,
    Verdict.INCONCLUSIVE: EXIT_SKIP,
}


@dataclass
class StepResult:
    """Outcome of one bisection step.

    Attributes:
        revision: Revision identifier (opaque)
        build: Build outcome
        verdict: Oracle verdict
        reason: Why the verdict was reached
    """

    revision: str
    build: BuildOutcome
    verdict: Verdict
    reason: str

    @property
    def exit_code(self) -> int:
        return VERDICT_EXIT_CODES[self.verdict]


def classify(
    revision: str,
    build: BuildOutcome,
    oracle: GuestOracle,
    output: Optional[bytes] = None,
    error: Optional[InconclusiveError] = None,
) -> StepResult:
    """Map a step's observations to a verdict.

    A build failure is inconclusive no matter what the guest printed. A
    session timeout or crash is inconclusive even if the token was seen.
    Otherwise the token decides: present is good, absent is bad.

    Args:
        revision: Revision identifier
        build: Build outcome
        oracle: Oracle whose success token is scanned for
        output: Captured guest console output (None if testing did not run)
        error: Build, timeout or crash error raised during the step

    Returns:
        StepResult with the verdict and the reason for it
    """
    if build == BuildOutcome.FAILED:
        reason = f"build failed: {error}" if error else "build failed"
        return StepResult(revision, build, Verdict.INCONCLUSIVE, reason)

    if error is not None:
        if error.output and oracle.matches(error.output):
            logger.warning("Success token was printed but the session ended abnormally")
        return StepResult(revision, build, Verdict.INCONCLUSIVE, str(error))

    if output is None:
        return StepResult(revision, build, Verdict.INCONCLUSIVE, "guest was not run")

    if oracle.matches(output):
        return StepResult(revision, build, Verdict.GOOD, "success token found")

    return StepResult(
        revision, build, Verdict.BAD, "guest halted without printing the success token"
    )
