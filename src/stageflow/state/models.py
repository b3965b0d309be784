"""Workflow run state models.

This module defines the data models for a single pipeline run, including:
- Stage: Enum of the fixed, totally ordered pipeline stages
- StepStatus / RunStatus: Lifecycle statuses for steps and runs
- WorkflowStep: One scheduled occurrence of a stage within a run
- ErrorRecord, PendingApproval, Artifacts, StageExecution: Run bookkeeping
- RunState: Complete state of one pipeline execution

The models use Pydantic for validation, consistent with the stage payload
schemas in payloads.py and the settings in config.py.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class Stage(str, Enum):
    """Pipeline stages, declared in execution order.

    Stage Flow:
        intake → research → design → build → verify → review
        → release → publish

    The set is fixed at pipeline-definition time. A run may revisit an
    earlier stage (rewind), but the stage order itself never changes.

    Attributes:
        INTAKE: Request triage and scoping.
        RESEARCH: Feasibility and prior-art investigation.
        DESIGN: Architecture plan.
        BUILD: Implementation of the plan.
        VERIFY: Test authoring and execution.
        REVIEW: Code review of the build and its tests.
        RELEASE: Deployment plan.
        PUBLISH: Documentation updates.
    """

    INTAKE = "intake"
    RESEARCH = "research"
    DESIGN = "design"
    BUILD = "build"
    VERIFY = "verify"
    REVIEW = "review"
    RELEASE = "release"
    PUBLISH = "publish"


STAGE_ORDER = tuple(Stage)


def stage_index(stage: Stage) -> int:
    """Return the rank of a stage in the canonical stage order.

    Example:
        >>> stage_index(Stage.INTAKE)
        0
        >>> stage_index(Stage.BUILD) < stage_index(Stage.VERIFY)
        True
    """
    return STAGE_ORDER.index(Stage(stage))


class StepStatus(str, Enum):
    """Status of a single workflow step.

    Transitions within one pass are strictly ordered
    pending → in_progress → (completed | failed). A rewind returns
    steps to pending for another pass.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(str, Enum):
    """Status of a whole run.

    State Flow:
        pending → in_progress ⇄ requires_approval → completed | failed
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    REQUIRES_APPROVAL = "requires_approval"
    COMPLETED = "completed"
    FAILED = "failed"


def is_terminal_status(status: RunStatus) -> bool:
    """Check if a run status is terminal.

    Example:
        >>> is_terminal_status(RunStatus.COMPLETED)
        True
        >>> is_terminal_status(RunStatus.REQUIRES_APPROVAL)
        False
    """
    return status in (RunStatus.COMPLETED, RunStatus.FAILED)


class StageSpec(BaseModel):
    """Definition of one stage slot in a pipeline.

    Attributes:
        stage: The stage to execute.
        executor_name: Name of the executor responsible for the stage.
        requires_approval: Whether the step needs an external decision.
        step_id: Optional explicit step id; generated when omitted.
    """

    stage: Stage
    executor_name: str = Field(..., min_length=1)
    requires_approval: bool = False
    step_id: Optional[str] = None


class WorkflowStep(BaseModel):
    """One scheduled occurrence of a stage within a run.

    Steps are created once, during pipeline initialization, and are then
    mutated in place by the controller. A rewind repositions the cursor
    onto an existing step instead of creating a new one.

    Attributes:
        id: Unique identifier within the run.
        stage: The stage this step executes.
        status: Current step status.
        executor_name: Name of the executor responsible for the stage.
        started_at: When the latest pass over this step started.
        completed_at: When the step last completed successfully.
        result: Opaque payload produced by the executor.
        error: Error message if the step failed.
        requires_approval: Whether an external decision gates this step.
        approved: Set once the step has been approved.
    """

    id: str = Field(..., min_length=1)
    stage: Stage
    status: StepStatus = StepStatus.PENDING
    executor_name: str = Field(..., min_length=1)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[Any] = None
    error: Optional[str] = None
    requires_approval: bool = False
    approved: Optional[bool] = None


class ErrorRecord(BaseModel):
    """Entry in the append-only error log of a run."""

    stage: Stage
    message: str
    timestamp: datetime = Field(default_factory=utc_now)
    step_id: Optional[str] = None
    category: Optional[str] = None


class PendingApproval(BaseModel):
    """An approval request that is waiting for an external decision."""

    step_id: str
    message: str
    payload: Optional[Any] = None


class Artifacts(BaseModel):
    """Free-form file lists accumulated over the run."""

    generated_files: List[str] = Field(default_factory=list)
    modified_files: List[str] = Field(default_factory=list)
    test_files: List[str] = Field(default_factory=list)
    document_files: List[str] = Field(default_factory=list)


ARTIFACT_KINDS = tuple(Artifacts.model_fields)


class StageExecution(BaseModel):
    """Audit record of one pass over one step.

    The step array of a run is fixed, so re-running a step after a rewind
    overwrites the step's own fields. Each pass is also appended here,
    which gives every stage execution its own timestamped record.

    Attributes:
        step_id: The step that was executed.
        stage: The stage of that step.
        iteration: Run iteration count at the time of execution.
        attempts: Number of executor invocations made for this pass.
        status: Final step status for this pass.
        started_at: When the pass started.
        completed_at: When the pass finished.
        error: Error message for failed passes.
        category: Failure category for failed passes.
    """

    step_id: str
    stage: Stage
    iteration: int = Field(default=0, ge=0)
    attempts: int = Field(default=0, ge=0)
    status: StepStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    category: Optional[str] = None


class RunState(BaseModel):
    """Complete state of one pipeline execution.

    The state is owned by exactly one controller for the duration of a
    run and mutated only through ProjectContext. Collaborators read it
    through snapshots.

    Attributes:
        id: Run identifier.
        original_request: The immutable request that started the run.
        status: Current run status.
        steps: Ordered, pre-allocated list of workflow steps.
        cursor: Index of the current step (0 <= cursor <= len(steps)).
        results: Latest result payload per stage.
        errors: Append-only error log.
        iteration_count: Number of rewinds performed so far.
        max_iterations: Rewind budget for the run.
        artifacts: Accumulated file lists.
        pending_approvals: Approval requests awaiting a decision.
        executions: Per-pass audit trail.
        created_at: When the run was created (UTC).
        updated_at: When the run was last mutated (UTC).
    """

    id: str = Field(..., min_length=1)
    original_request: str = Field(..., min_length=1)
    status: RunStatus = RunStatus.PENDING
    steps: List[WorkflowStep] = Field(default_factory=list)
    cursor: int = Field(default=0, ge=0)
    results: Dict[Stage, Any] = Field(default_factory=dict)
    errors: List[ErrorRecord] = Field(default_factory=list)
    iteration_count: int = Field(default=0, ge=0)
    max_iterations: int = Field(default=3, ge=0)
    artifacts: Artifacts = Field(default_factory=Artifacts)
    pending_approvals: List[PendingApproval] = Field(default_factory=list)
    executions: List[StageExecution] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def executions_for(self, stage: Stage) -> List[StageExecution]:
        """Return the audit records of every pass over a stage."""
        return [e for e in self.executions if e.stage == stage]

    def failed_step(self) -> Optional[WorkflowStep]:
        """Return the first failed step, if any."""
        for step in self.steps:
            if step.status == StepStatus.FAILED:
                return step
        return None
