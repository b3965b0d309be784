"""Task executor interface.

The orchestrator never inspects executor internals. It sees an executor
only through the TaskExecutor protocol: given a stage and a serialized
input, return an ExecutionResult, or raise one of the ExecutorError
subclasses below so the failure classifier can categorize it.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

from stageflow.state.models import Stage


class ExecutorError(Exception):
    """Raised by task executors when a stage call fails.

    Attributes:
        message: Human-readable error description.
        category: Failure category tag understood by the classifier.
        stage: Stage the call was made for, if known.
    """

    category: Optional[str] = None

    def __init__(
        self,
        message: str,
        category: Optional[str] = None,
        stage: Optional[Stage] = None,
    ):
        self.message = message
        if category is not None:
            self.category = category
        self.stage = stage
        super().__init__(message)


class MaxTurnsExceeded(ExecutorError):
    """The executor used up its turn budget without producing a result."""

    category = "MaxTurnsExceeded"


class GuardrailViolation(ExecutorError):
    """A guardrail rejected the executor's input or output."""

    category = "GuardrailViolation"


class ToolInvocationError(ExecutorError):
    """A tool called by the executor failed."""

    category = "ToolInvocationError"


class ModelBehaviorError(ExecutorError):
    """The executor produced malformed or schema-invalid output."""

    category = "ModelBehaviorError"


@dataclass
class ExecutionResult:
    """Outcome of one executor call.

    Attributes:
        ok: True when the call produced an output.
        output: The stage payload on success.
        error: Error message on failure.
        category: Optional failure category tag on failure.
    """

    ok: bool
    output: Optional[Any] = None
    error: Optional[str] = None
    category: Optional[str] = None

    @classmethod
    def success(cls, output: Any) -> "ExecutionResult":
        return cls(ok=True, output=output)

    @classmethod
    def failure(cls, error: str, category: Optional[str] = None) -> "ExecutionResult":
        return cls(ok=False, error=error, category=category)


@runtime_checkable
class TaskExecutor(Protocol):
    """Protocol for the collaborator that performs a stage's work.

    Implementations should honour ``timeout`` where they can and stop
    work promptly once ``cancel_event`` is set. The retry controller
    enforces both independently, so an executor that ignores them is
    still bounded.
    """

    async def execute(
        self,
        stage: Stage,
        serialized_input: str,
        *,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExecutionResult:
        """Execute the work for one stage.

        Args:
            stage: The stage being executed.
            serialized_input: Deterministic JSON input for the stage.
            timeout: Per-attempt timeout in seconds.
            cancel_event: Set when the run is cancelled.

        Returns:
            ExecutionResult with the stage payload or an error.

        Raises:
            ExecutorError: For categorized failures.
        """
        ...
