"""Database models and the diagnostic journal."""

from pcibisect.persistence.models import Run, Step, StepLog
from pcibisect.persistence.state_manager import RunRecord, StateManager, StepRecord


__all__ = [
    # Models
    "Run",
    "Step",
    "StepLog",
    # State Manager
    "RunRecord",
    "StepRecord",
    "StateManager",
]
