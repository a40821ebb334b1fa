from openplane.runs.engine import (
    NoPlanAvailableError,
    NoPreviousRunError,
    PlanExecutionError,
    PlanExecutionService,
    PlanNotApprovedError,
    RunAlreadyCompletedError,
)
from openplane.runs.transitions import RECOVERY_REASON, apply_transition

__all__ = [
    "NoPlanAvailableError",
    "NoPreviousRunError",
    "PlanExecutionError",
    "PlanExecutionService",
    "PlanNotApprovedError",
    "RECOVERY_REASON",
    "RunAlreadyCompletedError",
    "apply_transition",
]
