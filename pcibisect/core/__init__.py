"""Core bisection step logic for pcibisect."""

from pcibisect.core.bisect_runner import BisectRunner
from pcibisect.core.classifier import BuildOutcome, StepResult, Verdict, classify
from pcibisect.core.oracle import GuestOracle
from pcibisect.core.orchestrator import StepDriver, StepState, abort_on_signals
from pcibisect.core.workspace import Workspace, WorkspaceSnapshot


__all__ = [
    "BisectRunner",
    "BuildOutcome",
    "GuestOracle",
    "StepDriver",
    "StepResult",
    "StepState",
    "Verdict",
    "Workspace",
    "WorkspaceSnapshot",
    "abort_on_signals",
    "classify",
]
