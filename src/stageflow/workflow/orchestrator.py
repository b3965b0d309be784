"""Workflow orchestrator driving a run through its pipeline stages.

The orchestrator owns one ProjectContext and walks its pre-allocated
steps with a cursor:

    execute step → (approval) → quality check → advance | rewind

Executor failures go through the retry runner and end up as step and
error-log entries. Quality failures reported in a stage payload (failed
checks, high-severity review issues) rewind the cursor to the rework
stage, bounded by the run's iteration budget. The orchestrator never
lets an exception escape execute_workflow; every failure path becomes
run state. Only an invalid construction raises.

Collaborators are injected: the task executor(s), the approval handler,
the retry runner, the event emitter and both quality predicates.
"""

import asyncio
import logging
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from stageflow import payloads
from stageflow.approval.gate import ApprovalGate, ApprovalHandler, ApprovalPolicy
from stageflow.events.emitter import EventEmitter, NullEventEmitter
from stageflow.events.models import EventType, WorkflowEvent
from stageflow.executor.base import TaskExecutor
from stageflow.runner.classifier import FailureCategory, is_fatal_error
from stageflow.runner.retry import RetryPolicy, RetryRunner, StageRunResult
from stageflow.state.context import ProjectContext
from stageflow.state.models import (
    RunState,
    RunStatus,
    Stage,
    StageExecution,
    StepStatus,
    WorkflowStep,
    is_terminal_status,
    utc_now,
)
from stageflow.workflow.definition import PipelineDefinition
from stageflow.workflow.inputs import build_stage_input

logger = logging.getLogger(__name__)

APPROVAL_DECLINED = "approval declined"

QualityPredicate = Callable[[Any], bool]
ExecutorSource = Union[TaskExecutor, Mapping[str, TaskExecutor]]


def _cancel_pending(tasks: Iterable["asyncio.Future[Any]"]) -> None:
    for task in tasks:
        if not task.done():
            task.cancel()


class WorkflowOrchestrator:
    """Runs one pipeline run to a terminal status.

    Attributes:
        definition: The pipeline definition the run follows.
        retry_runner: Runs executor calls with timeout and retries.
        retry_policy: Policy override handed to the retry runner.
        approval_gate: Obtains decisions for gated steps.
        event_emitter: Receives progress events.

    Example:
        >>> orchestrator = WorkflowOrchestrator.create_workflow(
        ...     "Build a todo app", default_pipeline(), executor=executor
        ... )
        >>> state = await orchestrator.execute_workflow()
        >>> state.status
        <RunStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        executor: ExecutorSource,
        approval_handler: Optional[ApprovalHandler] = None,
        approval_policy: Optional[ApprovalPolicy] = None,
        retry_runner: Optional[RetryRunner] = None,
        retry_policy: Optional[RetryPolicy] = None,
        event_emitter: Optional[EventEmitter] = None,
        has_failed_checks: QualityPredicate = payloads.has_failed_checks,
        has_high_severity_issue: QualityPredicate = payloads.has_high_severity_issue,
        context: Optional[ProjectContext] = None,
    ):
        """Initialize the orchestrator.

        Args:
            definition: Validated pipeline definition.
            executor: A single task executor for every stage, or a mapping
                from executor name to task executor.
            approval_handler: Decision function for gated steps.
            approval_policy: Behavior when no decision is available.
            retry_runner: Retry runner; built from retry_policy if omitted.
            retry_policy: Policy for every stage call.
            event_emitter: Progress event sink; events are dropped if omitted.
            has_failed_checks: Reads failed checks from a verify payload.
            has_high_severity_issue: Reads error issues from a review payload.
            context: The run to drive. Use create_workflow to build one.

        Raises:
            ValueError: If context is missing or an executor name in the
                definition has no executor.
        """
        if context is None:
            raise ValueError("context is required, use create_workflow()")

        self.definition = definition
        self.retry_runner = retry_runner or RetryRunner(policy=retry_policy)
        self.retry_policy = retry_policy
        self.approval_gate = ApprovalGate(approval_handler, approval_policy)
        self.event_emitter = event_emitter or NullEventEmitter()
        self._executor = executor
        self._has_failed_checks = has_failed_checks
        self._has_high_severity_issue = has_high_severity_issue
        self._context = context
        self._cancel_event = asyncio.Event()
        self._quality_failure_outstanding = False

        if isinstance(executor, Mapping):
            missing = sorted(
                {spec.executor_name for spec in definition.stages} - set(executor)
            )
            if missing:
                raise ValueError(f"No executor registered for: {', '.join(missing)}")

        if not context.state.steps:
            for spec in definition.stages:
                context.add_step(spec)

    @classmethod
    def create_workflow(
        cls,
        original_request: str,
        definition: PipelineDefinition,
        **kwargs: Any,
    ) -> "WorkflowOrchestrator":
        """Create an orchestrator for a fresh run.

        Args:
            original_request: The request that starts the run.
            definition: The pipeline to follow.
            **kwargs: Collaborators passed through to the constructor.

        Returns:
            WorkflowOrchestrator with one pending step per stage spec.
        """
        context = ProjectContext.create(
            original_request, max_iterations=definition.max_iterations
        )
        return cls(definition, context=context, **kwargs)

    @property
    def run_id(self) -> str:
        return self._context.run_id

    def get_context(self) -> ProjectContext:
        """Return the live run context. Read-only for everyone but this object."""
        return self._context

    def snapshot(self) -> RunState:
        return self._context.snapshot()

    def cancel(self) -> None:
        """Cancel the run.

        The in-flight executor call and any approval wait are abandoned,
        and the run finalizes as failed with a Cancelled error.
        """
        if not self._cancel_event.is_set():
            logger.info("Cancelling workflow", extra={"run_id": self.run_id})
            self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def execute_workflow(self) -> RunState:
        """Run the pipeline to a terminal status.

        Returns:
            A snapshot of the finalized run state.
        """
        context = self._context
        if is_terminal_status(context.state.status):
            logger.warning(
                "Workflow already finished",
                extra={"run_id": self.run_id, "status": context.state.status.value},
            )
            return context.snapshot()

        context.set_status(RunStatus.IN_PROGRESS)
        logger.info(
            "Starting workflow",
            extra={
                "run_id": self.run_id,
                "steps": len(context.state.steps),
                "max_iterations": context.state.max_iterations,
            },
        )
        await self._emit(
            EventType.RUN_STARTED,
            steps=len(context.state.steps),
            max_iterations=context.state.max_iterations,
        )

        try:
            await self._run_steps()
        except asyncio.CancelledError:
            self._record_unexpected("Cancelled: workflow task was cancelled")
            await self._finalize()
            raise
        except Exception as exc:
            logger.exception(
                "Unexpected error in workflow loop",
                extra={"run_id": self.run_id},
            )
            self._record_unexpected(f"Unexpected error: {exc}")
            await self._emit(EventType.ERROR, error=str(exc))

        return await self._finalize()

    async def _run_steps(self) -> None:
        context = self._context

        while context.has_more_steps():
            step = context.current_step()
            if step is None:
                break

            if self._cancel_event.is_set():
                context.record_error(
                    step.stage,
                    f"Cancelled: run was cancelled before {step.stage.value}",
                    step_id=step.id,
                    category=FailureCategory.CANCELLED.value,
                )
                break

            outcome = await self._execute_step(step)

            if not outcome.success:
                if not outcome.recoverable or is_fatal_error(outcome.error):
                    logger.error(
                        "Stopping workflow after step failure",
                        extra={
                            "run_id": self.run_id,
                            "stage": step.stage.value,
                            "category": outcome.category.value
                            if outcome.category
                            else None,
                        },
                    )
                    break
                if not context.advance_cursor():
                    break
                continue

            if step.requires_approval and not step.approved:
                if not await self._await_approval(step, outcome.output):
                    break
            else:
                context.update_step_status(step.id, StepStatus.COMPLETED)

            if self._iteration_needed():
                if context.iteration_budget_remaining():
                    await self._rewind(step)
                    continue
                self._quality_failure_outstanding = True
                context.record_error(
                    step.stage,
                    "Iteration budget exhausted after "
                    f"{context.state.iteration_count} iteration(s) "
                    "with quality failures outstanding",
                    step_id=step.id,
                )
                break

            if not context.advance_cursor():
                break

    async def _execute_step(self, step: WorkflowStep) -> StageRunResult:
        """Execute one step through the retry runner and record the outcome.

        On success the result is stored, artifacts are collected and the
        step stays IN_PROGRESS until the loop settles approval.
        """
        context = self._context
        context.mark_step_started(step.id)
        started_at = step.started_at or utc_now()
        await self._emit(
            EventType.STEP_STARTED,
            stage=step.stage,
            step_id=step.id,
            executor_name=step.executor_name,
            iteration=context.state.iteration_count,
        )

        stage_input = build_stage_input(step.stage, context.state)
        outcome = await self.retry_runner.run_with_retry(
            self._executor_for(step),
            step.stage,
            stage_input,
            policy=self.retry_policy,
            cancel_event=self._cancel_event,
        )
        category = outcome.category.value if outcome.category else None

        if outcome.success:
            context.store_result(step.stage, outcome.output)
            context.update_step_status(
                step.id, StepStatus.IN_PROGRESS, result=outcome.output
            )
            for kind, paths in payloads.extract_artifacts(
                step.stage, outcome.output
            ).items():
                context.add_artifacts(kind, paths)
            status = StepStatus.COMPLETED
            await self._emit(
                EventType.STEP_COMPLETED,
                stage=step.stage,
                step_id=step.id,
                attempts=outcome.attempts,
                duration_seconds=outcome.duration_seconds,
            )
        else:
            error = outcome.error or "Unknown error"
            context.update_step_status(step.id, StepStatus.FAILED, error=error)
            context.record_error(
                step.stage, error, step_id=step.id, category=category
            )
            status = StepStatus.FAILED
            await self._emit(
                EventType.STEP_FAILED,
                stage=step.stage,
                step_id=step.id,
                attempts=outcome.attempts,
                duration_seconds=outcome.duration_seconds,
                error=error,
                category=category,
            )

        context.record_execution(
            StageExecution(
                step_id=step.id,
                stage=step.stage,
                iteration=context.state.iteration_count,
                attempts=outcome.attempts,
                status=status,
                started_at=started_at,
                completed_at=utc_now(),
                error=outcome.error,
                category=category,
            )
        )
        return outcome

    async def _await_approval(self, step: WorkflowStep, output: Any) -> bool:
        """Suspend on the approval gate for a step.

        The step completes only on approval. A decline, a handler error
        or a cancellation fails the step with "approval declined". When
        the task awaiting the run is cancelled mid-wait, the approval is
        resolved as declined before the cancellation propagates.
        """
        context = self._context
        message = (
            f"Approve {step.stage.value} output from {step.executor_name} "
            f"(step {step.id})?"
        )
        context.request_approval(step.id, message, output)
        await self._emit(
            EventType.APPROVAL_REQUESTED,
            stage=step.stage,
            step_id=step.id,
            prompt=message,
        )

        approved = False
        reason = APPROVAL_DECLINED
        decision = asyncio.ensure_future(
            self.approval_gate.decide(step.id, message, output, context.snapshot())
        )
        cancel_waiter = asyncio.ensure_future(self._cancel_event.wait())
        waiters = (decision, cancel_waiter)
        try:
            done, _ = await asyncio.wait(
                set(waiters), return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            _cancel_pending(waiters)
            await self._resolve_approval(
                step, False, f"{APPROVAL_DECLINED}: run was cancelled"
            )
            raise
        _cancel_pending(waiters)

        if decision in done and decision.cancelled():
            logger.warning(
                "Approval handler was cancelled, treating as declined",
                extra={"run_id": self.run_id, "step_id": step.id},
            )
        elif decision in done:
            try:
                approved = bool(decision.result())
            except Exception:
                logger.exception(
                    "Approval handler failed, treating as declined",
                    extra={"run_id": self.run_id, "step_id": step.id},
                )
        else:
            reason = f"{APPROVAL_DECLINED}: run was cancelled"

        return await self._resolve_approval(step, approved, reason)

    async def _resolve_approval(
        self, step: WorkflowStep, approved: bool, reason: str
    ) -> bool:
        context = self._context
        context.resolve_approval(step.id, approved)
        await self._emit(
            EventType.APPROVAL_RESOLVED,
            stage=step.stage,
            step_id=step.id,
            approved=approved,
        )

        if approved:
            context.update_step_status(step.id, StepStatus.COMPLETED)
            return True

        logger.warning(
            "Step approval declined",
            extra={"run_id": self.run_id, "step_id": step.id, "reason": reason},
        )
        context.update_step_status(step.id, StepStatus.FAILED, error=reason)
        context.record_error(step.stage, reason, step_id=step.id)
        return False

    def _iteration_needed(self) -> bool:
        context = self._context
        return bool(
            self._has_failed_checks(context.get_result(Stage.VERIFY))
            or self._has_high_severity_issue(context.get_result(Stage.REVIEW))
        )

    async def _rewind(self, step: WorkflowStep) -> None:
        """Rewind the cursor to the rework stage for another pass."""
        context = self._context
        rework_stage = self.definition.rework_stage
        iteration = context.increment_iteration()
        index = context.rewind_cursor_to(rework_stage)
        context.reset_steps_from(index)
        context.clear_results_from(rework_stage)
        logger.warning(
            "Quality failure, rewinding workflow",
            extra={
                "run_id": self.run_id,
                "trigger_stage": step.stage.value,
                "rework_stage": rework_stage.value,
                "iteration": iteration,
            },
        )
        await self._emit(
            EventType.ITERATION,
            stage=step.stage,
            iteration=iteration,
            rework_stage=rework_stage.value,
        )

    async def _finalize(self) -> RunState:
        context = self._context
        state = context.state

        if context.all_steps_completed() and not self._quality_failure_outstanding:
            context.set_status(RunStatus.COMPLETED)
            logger.info(
                "Workflow completed",
                extra={"run_id": self.run_id, "iterations": state.iteration_count},
            )
            await self._emit(
                EventType.RUN_COMPLETED,
                status=RunStatus.COMPLETED.value,
                iteration_count=state.iteration_count,
                error_count=len(state.errors),
            )
            return context.snapshot()

        if not state.errors:
            self._record_unexpected("Workflow stopped before all steps completed")
        context.set_status(RunStatus.FAILED)
        stopped_at = state.errors[-1]
        failed_step = state.failed_step()
        logger.error(
            "Workflow failed",
            extra={
                "run_id": self.run_id,
                "stage": stopped_at.stage.value,
                "step_id": stopped_at.step_id,
                "failed_step_id": failed_step.id if failed_step else None,
                "error": stopped_at.message,
            },
        )
        await self._emit(
            EventType.RUN_FAILED,
            stage=stopped_at.stage,
            status=RunStatus.FAILED.value,
            iteration_count=state.iteration_count,
            error_count=len(state.errors),
            error=stopped_at.message,
        )
        return context.snapshot()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _executor_for(self, step: WorkflowStep) -> TaskExecutor:
        if isinstance(self._executor, Mapping):
            return self._executor[step.executor_name]
        return self._executor

    def _record_unexpected(self, message: str) -> None:
        """Record an error against the step at the cursor (or the first step)."""
        context = self._context
        step = context.current_step()
        if step is None and context.state.steps:
            step = context.state.steps[0]
        if step is None:
            stage = self.definition.stages[0].stage
            context.record_error(stage, message)
            return
        if step.status == StepStatus.IN_PROGRESS:
            context.update_step_status(step.id, StepStatus.FAILED, error=message)
        context.record_error(step.stage, message, step_id=step.id)

    async def _emit(
        self,
        event_type: EventType,
        stage: Optional[Stage] = None,
        **details: Any,
    ) -> None:
        await self._safe_emit(
            WorkflowEvent(
                event_type=event_type,
                run_id=self.run_id,
                stage=stage,
                details=details,
            )
        )

    async def _safe_emit(self, event: WorkflowEvent) -> None:
        """Emit an event, swallowing exceptions to avoid disrupting the run."""
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit workflow event",
                extra={
                    "event_type": event.event_type.value,
                    "run_id": event.run_id,
                },
            )
