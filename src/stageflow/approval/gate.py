"""Approval gate for steps that need an external decision.

The gate is stateless: all suspension bookkeeping lives in the run's
ProjectContext (request_approval / resolve_approval). The gate only
decides how to obtain a yes/no answer:

- auto_approve policy: approve immediately
- injected handler: await its decision (may take human timescales)
- no handler: decline with a warning, unless the policy is fail_open
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from stageflow.state.models import RunState

logger = logging.getLogger(__name__)

ApprovalHandler = Callable[
    [str, str, Any, RunState],
    Union[bool, Awaitable[bool]],
]


@dataclass
class ApprovalPolicy:
    """How the gate behaves when no human decision is available.

    Attributes:
        auto_approve: Approve every request without calling the handler.
        fail_open: Approve (with a warning) when no handler is configured.
            Off by default, so an unattended gate declines.
    """

    auto_approve: bool = False
    fail_open: bool = False


class ApprovalGate:
    """Obtains approval decisions for gated steps.

    Attributes:
        handler: Decision function ``(step_id, message, payload, snapshot)``
            returning a bool or an awaitable bool.
        policy: The approval policy.
    """

    def __init__(
        self,
        handler: Optional[ApprovalHandler] = None,
        policy: Optional[ApprovalPolicy] = None,
    ):
        self.handler = handler
        self.policy = policy or ApprovalPolicy()

    async def decide(
        self,
        step_id: str,
        message: str,
        payload: Any,
        snapshot: RunState,
    ) -> bool:
        """Wait for a decision on one step.

        Args:
            step_id: The step awaiting approval.
            message: Human-readable approval prompt.
            payload: The step result under review.
            snapshot: Read-only copy of the run state.

        Returns:
            True if the step is approved.

        Raises:
            Exception: Whatever the handler raises; the orchestrator
                treats it as a decline.
        """
        if self.policy.auto_approve:
            logger.info("Auto-approving step", extra={"step_id": step_id})
            return True

        if self.handler is None:
            if self.policy.fail_open:
                logger.warning(
                    "No approval handler configured, approving step",
                    extra={"step_id": step_id},
                )
                return True
            logger.warning(
                "No approval handler configured, declining step",
                extra={"step_id": step_id},
            )
            return False

        decision = self.handler(step_id, message, payload, snapshot)
        if inspect.isawaitable(decision):
            decision = await decision
        return bool(decision)
