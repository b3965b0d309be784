"""Human-in-the-loop approval queue.

ApprovalQueue is an approval handler for hosted runs: each request is
parked on an asyncio.Future until a person resolves it (for example
through the HTTP service in main.py). Approvals may legitimately take
human timescales, so no timeout is imposed here.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from stageflow.state.models import RunState, utc_now

logger = logging.getLogger(__name__)


@dataclass
class ApprovalRequest:
    """An approval waiting for a human decision."""

    run_id: str
    step_id: str
    message: str
    payload: Any = None
    requested_at: datetime = field(default_factory=utc_now)


class ApprovalNotFoundError(Exception):
    """Raised when resolving an approval that is not waiting.

    Attributes:
        run_id: The run the approval belongs to.
        step_id: The step the approval belongs to.
    """

    def __init__(self, run_id: str, step_id: str):
        self.run_id = run_id
        self.step_id = step_id
        super().__init__(f"No pending approval for {run_id}/{step_id}")


class ApprovalQueue:
    """Parks approval requests until they are resolved.

    Instances are callable with the ApprovalHandler signature, so one
    queue can serve as the handler for many runs.

    Example:
        >>> queue = ApprovalQueue()
        >>> orchestrator = WorkflowOrchestrator(..., approval_handler=queue)
        >>> # later, from another task:
        >>> queue.resolve(run_id, step_id, approved=True)
    """

    def __init__(self) -> None:
        self._waiting: Dict[Tuple[str, str], Tuple[ApprovalRequest, asyncio.Future]] = {}

    async def __call__(
        self,
        step_id: str,
        message: str,
        payload: Any,
        snapshot: RunState,
    ) -> bool:
        key = (snapshot.id, step_id)
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        request = ApprovalRequest(
            run_id=snapshot.id,
            step_id=step_id,
            message=message,
            payload=payload,
        )
        self._waiting[key] = (request, future)
        logger.info(
            "Waiting for approval",
            extra={"run_id": snapshot.id, "step_id": step_id},
        )
        try:
            return await future
        finally:
            self._waiting.pop(key, None)

    def pending(self, run_id: Optional[str] = None) -> List[ApprovalRequest]:
        """List waiting approvals, optionally for a single run."""
        return [
            request
            for request, _ in self._waiting.values()
            if run_id is None or request.run_id == run_id
        ]

    def resolve(self, run_id: str, step_id: str, approved: bool) -> None:
        """Deliver a decision for a waiting approval.

        Raises:
            ApprovalNotFoundError: If nothing is waiting for that step.
        """
        entry = self._waiting.get((run_id, step_id))
        if entry is None or entry[1].done():
            raise ApprovalNotFoundError(run_id, step_id)
        logger.info(
            "Approval resolved",
            extra={"run_id": run_id, "step_id": step_id, "approved": approved},
        )
        entry[1].set_result(bool(approved))

    def cancel_run(self, run_id: str) -> int:
        """Decline every waiting approval of a run.

        Returns:
            The number of approvals declined.
        """
        declined = 0
        for (waiting_run, _), (_, future) in list(self._waiting.items()):
            if waiting_run == run_id and not future.done():
                future.set_result(False)
                declined += 1
        return declined
