"""Project context: the mutation API over a run's state.

ProjectContext wraps a RunState and is the only way the controller
changes it. Every mutating method refreshes ``updated_at``; the run
state object itself enforces no control-flow policy (for example the
decision to stop iterating belongs to the orchestrator).

Unknown step ids passed to ``update_step_status`` are tolerated: the
call is logged and ignored rather than raised, so a stale id held by
a collaborator can never crash a run.
"""

import logging
import uuid
from typing import Any, Iterable, Optional

from stageflow.state.models import (
    ARTIFACT_KINDS,
    ErrorRecord,
    PendingApproval,
    RunState,
    RunStatus,
    Stage,
    StageExecution,
    StageSpec,
    StepStatus,
    WorkflowStep,
    stage_index,
    utc_now,
)


logger = logging.getLogger(__name__)


class DuplicateStepError(Exception):
    """Raised when a step id is added twice to the same run.

    Attributes:
        step_id: The duplicated step id.
    """

    def __init__(self, step_id: str):
        self.step_id = step_id
        super().__init__(f"Step id already present in run: {step_id}")


class ProjectContext:
    """Mutable record of a single pipeline run.

    Attributes:
        state: The wrapped RunState (read-only by convention for anyone
            but the owning controller).

    Example:
        >>> context = ProjectContext.create("Build a todo app")
        >>> step_id = context.add_step(
        ...     StageSpec(stage=Stage.BUILD, executor_name="Implementer")
        ... )
        >>> context.current_step().id == step_id
        True
    """

    def __init__(self, state: RunState):
        self._state = state

    @classmethod
    def create(cls, original_request: str, max_iterations: int = 3) -> "ProjectContext":
        """Create a fresh run in the PENDING status.

        Args:
            original_request: The request that starts the run.
            max_iterations: Rewind budget for the run.

        Returns:
            A new ProjectContext with no steps, cursor 0 and iteration 0.

        Raises:
            ValueError: If original_request is empty.
        """
        if not original_request or not original_request.strip():
            raise ValueError("original_request cannot be empty")

        now = utc_now()
        state = RunState(
            id=f"run_{uuid.uuid4().hex[:12]}",
            original_request=original_request,
            status=RunStatus.PENDING,
            max_iterations=max_iterations,
            created_at=now,
            updated_at=now,
        )
        logger.info(
            "Created project context",
            extra={"run_id": state.id, "max_iterations": max_iterations},
        )
        return cls(state)

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def run_id(self) -> str:
        return self._state.id

    def snapshot(self) -> RunState:
        """Return a deep copy of the run state for read-only consumers."""
        return self._state.model_copy(deep=True)

    def _touch(self) -> None:
        now = utc_now()
        # Keep updated_at monotonic even if the wall clock steps back.
        if now < self._state.updated_at:
            now = self._state.updated_at
        self._state.updated_at = now

    # ------------------------------------------------------------------
    # Steps and cursor
    # ------------------------------------------------------------------

    def add_step(self, spec: StageSpec) -> str:
        """Append a new pending step.

        Args:
            spec: Stage definition for the step.

        Returns:
            The id of the new step.

        Raises:
            DuplicateStepError: If spec.step_id is already used in this run.
        """
        step_id = spec.step_id or (
            f"step_{len(self._state.steps)}_{uuid.uuid4().hex[:8]}"
        )
        if self.get_step(step_id) is not None:
            raise DuplicateStepError(step_id)

        self._state.steps.append(
            WorkflowStep(
                id=step_id,
                stage=spec.stage,
                status=StepStatus.PENDING,
                executor_name=spec.executor_name,
                requires_approval=spec.requires_approval,
            )
        )
        self._touch()
        return step_id

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self._state.steps:
            if step.id == step_id:
                return step
        return None

    def current_step(self) -> Optional[WorkflowStep]:
        """Return the step at the cursor, or None when out of range."""
        cursor = self._state.cursor
        if 0 <= cursor < len(self._state.steps):
            return self._state.steps[cursor]
        return None

    def has_more_steps(self) -> bool:
        return self._state.cursor < len(self._state.steps)

    def all_steps_completed(self) -> bool:
        steps = self._state.steps
        return bool(steps) and all(s.status == StepStatus.COMPLETED for s in steps)

    def mark_step_started(self, step_id: str) -> None:
        """Move a step to IN_PROGRESS and stamp its start time.

        Clears error and completion data left over from a previous pass.
        """
        step = self.get_step(step_id)
        if step is None:
            logger.warning("Cannot start unknown step", extra={"step_id": step_id})
            return
        step.status = StepStatus.IN_PROGRESS
        step.started_at = utc_now()
        step.completed_at = None
        step.error = None
        self._touch()

    def update_step_status(
        self,
        step_id: str,
        status: StepStatus,
        result: Optional[Any] = None,
        error: Optional[str] = None,
    ) -> None:
        """Set a step's status, optionally recording its result or error.

        This is the only place a step's result is recorded. Completing a
        step stamps ``completed_at``. An unknown step id is logged and
        ignored.

        Args:
            step_id: The step to update.
            status: The new step status.
            result: Result payload to record, if any.
            error: Error message to record, if any.
        """
        step = self.get_step(step_id)
        if step is None:
            logger.warning(
                "Ignoring status update for unknown step",
                extra={"step_id": step_id, "status": StepStatus(status).value},
            )
            return

        step.status = StepStatus(status)
        if result is not None:
            step.result = result
        if error is not None:
            step.error = error
        if step.status == StepStatus.COMPLETED:
            step.completed_at = utc_now()
        self._touch()

    def advance_cursor(self) -> bool:
        """Move the cursor forward one step.

        Returns:
            True if the cursor moved, False if it was already on the
            last step (or the run has no steps).
        """
        if self._state.cursor < len(self._state.steps) - 1:
            self._state.cursor += 1
            self._touch()
            return True
        return False

    def rewind_cursor_to(self, stage: Stage) -> int:
        """Reposition the cursor on the first step of a stage.

        Args:
            stage: The stage to rewind to.

        Returns:
            The new cursor index.

        Raises:
            ValueError: If no step in the run has that stage.
        """
        for index, step in enumerate(self._state.steps):
            if step.stage == stage:
                self._state.cursor = index
                self._touch()
                return index
        raise ValueError(f"No step for stage {Stage(stage).value} in run")

    def reset_steps_from(self, index: int) -> None:
        """Return the steps from ``index`` onwards to PENDING.

        Used together with a rewind so the next pass starts from a clean
        step status. Approval flags are kept.
        """
        for step in self._state.steps[index:]:
            step.status = StepStatus.PENDING
            step.error = None
            step.completed_at = None
        self._touch()

    # ------------------------------------------------------------------
    # Results, errors and artifacts
    # ------------------------------------------------------------------

    def store_result(self, stage: Stage, payload: Any) -> None:
        self._state.results[Stage(stage)] = payload
        self._touch()

    def get_result(self, stage: Stage) -> Optional[Any]:
        return self._state.results.get(Stage(stage))

    def clear_results_from(self, stage: Stage) -> None:
        """Drop the result slots of ``stage`` and every later stage."""
        floor = stage_index(stage)
        for key in list(self._state.results):
            if stage_index(key) >= floor:
                del self._state.results[key]
        self._touch()

    def record_error(
        self,
        stage: Stage,
        message: str,
        step_id: Optional[str] = None,
        category: Optional[str] = None,
    ) -> None:
        """Append an entry to the error log. The run status is unchanged."""
        self._state.errors.append(
            ErrorRecord(
                stage=stage,
                message=message,
                step_id=step_id,
                category=category,
            )
        )
        self._touch()

    def add_artifacts(self, kind: str, paths: Iterable[str]) -> None:
        """Add file paths to one artifacts list, skipping duplicates.

        Raises:
            ValueError: If kind is not a known artifacts list.
        """
        if kind not in ARTIFACT_KINDS:
            raise ValueError(f"Unknown artifact kind: {kind}")
        bucket = getattr(self._state.artifacts, kind)
        for path in paths:
            if path and path not in bucket:
                bucket.append(path)
        self._touch()

    def record_execution(self, execution: StageExecution) -> None:
        self._state.executions.append(execution)
        self._touch()

    # ------------------------------------------------------------------
    # Iterations
    # ------------------------------------------------------------------

    def increment_iteration(self) -> int:
        self._state.iteration_count += 1
        self._touch()
        return self._state.iteration_count

    def iteration_budget_remaining(self) -> bool:
        return self._state.iteration_count < self._state.max_iterations

    # ------------------------------------------------------------------
    # Status and approvals
    # ------------------------------------------------------------------

    def set_status(self, status: RunStatus) -> None:
        self._state.status = RunStatus(status)
        self._touch()

    def request_approval(self, step_id: str, message: str, payload: Any = None) -> None:
        """Register a pending approval and move the run to REQUIRES_APPROVAL."""
        self._state.pending_approvals.append(
            PendingApproval(step_id=step_id, message=message, payload=payload)
        )
        self._state.status = RunStatus.REQUIRES_APPROVAL
        self._touch()

    def resolve_approval(self, step_id: str, approved: bool) -> None:
        """Remove a pending approval and record the decision.

        The step's ``approved`` flag is set only when the decision is
        positive. Once nothing is pending the run returns to IN_PROGRESS.
        """
        self._state.pending_approvals = [
            a for a in self._state.pending_approvals if a.step_id != step_id
        ]
        if approved:
            step = self.get_step(step_id)
            if step is not None:
                step.approved = True
        if not self._state.pending_approvals:
            self._state.status = RunStatus.IN_PROGRESS
        self._touch()
