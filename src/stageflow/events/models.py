"""Workflow event models for observability.

This module defines the data models for workflow events, including:
- EventType: Enum of all event types emitted by the orchestrator
- WorkflowEvent: Structured event with run, stage and details

Events are emitted for monitoring, progress reporting and debugging.
The models use Pydantic, consistent with state/models.py.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from stageflow.state.models import Stage


class EventType(str, Enum):
    """Types of events emitted by the workflow orchestrator.

    Event Categories:
        RUN_STARTED / RUN_COMPLETED / RUN_FAILED: Run lifecycle.
        STEP_STARTED / STEP_COMPLETED / STEP_FAILED: Step lifecycle.
        APPROVAL_REQUESTED / APPROVAL_RESOLVED: Approval gate activity.
        ITERATION: A quality failure rewound the run for another pass.
        ERROR: An unexpected error was converted into run state.
    """

    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_RESOLVED = "approval_resolved"
    ITERATION = "iteration"
    ERROR = "error"


class WorkflowEvent(BaseModel):
    """Structured event emitted by the workflow orchestrator.

    Attributes:
        event_type: The category of event.
        run_id: Identifier of the run the event belongs to.
        stage: Stage the event relates to, if any.
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Details Field Conventions:
        For STEP_* events:
            - step_id, executor_name
            - attempts, duration_seconds (completed/failed)
            - error, category (failed)

        For ITERATION events:
            - iteration, rework_stage

        For RUN_* events:
            - status, iteration_count, error_count
    """

    event_type: EventType
    run_id: str = Field(..., min_length=1)
    stage: Optional[Stage] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    details: Dict[str, Any] = Field(default_factory=dict)

    def to_log_dict(self) -> Dict[str, Any]:
        """Convert the event to a flat dictionary for structured logging.

        Example:
            >>> event = WorkflowEvent(
            ...     event_type=EventType.ITERATION,
            ...     run_id="run_1",
            ...     details={"iteration": 1},
            ... )
            >>> event.to_log_dict()["event_type"]
            'iteration'
        """
        return {
            "event_type": self.event_type.value,
            "run_id": self.run_id,
            "stage": self.stage.value if self.stage else None,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
