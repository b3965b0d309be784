"""Workflow run state.

A run is a fixed list of steps walked by a cursor:
- pending → in_progress ⇄ requires_approval → completed | failed

ProjectContext is the only mutation API over a RunState; collaborators
read snapshots.
"""

from stageflow.state.context import DuplicateStepError, ProjectContext
from stageflow.state.models import (
    ARTIFACT_KINDS,
    STAGE_ORDER,
    Artifacts,
    ErrorRecord,
    PendingApproval,
    RunState,
    RunStatus,
    Stage,
    StageExecution,
    StageSpec,
    StepStatus,
    WorkflowStep,
    is_terminal_status,
    stage_index,
)

__all__ = [
    # Models
    "ARTIFACT_KINDS",
    "STAGE_ORDER",
    "Artifacts",
    "ErrorRecord",
    "PendingApproval",
    "RunState",
    "RunStatus",
    "Stage",
    "StageExecution",
    "StageSpec",
    "StepStatus",
    "WorkflowStep",
    "is_terminal_status",
    "stage_index",
    # Context
    "DuplicateStepError",
    "ProjectContext",
]
