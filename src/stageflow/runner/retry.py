"""Retry controller for task executor calls.

Wraps a single executor call with a per-attempt timeout, bounded
retries and capped exponential backoff. Every outcome is returned as a
StageRunResult; nothing is raised to the caller, which keeps the
orchestrator's control flow linear.

Retry rules:
- A non-recoverable classification returns immediately, and so does a
  message matching a fatal operational pattern (auth, permissions,
  filesystem, network). Category and recoverable flag are kept as
  classified; stopping the run on a fatal error is the orchestrator's call.
- A timeout is a recoverable ``Timeout`` failure.
- An explicit cancellation returns ``Cancelled`` and is never retried.
- Exhausting the retry budget returns ``RetryExhausted``, carrying the
  last underlying error message.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from stageflow.executor.base import ExecutionResult, ExecutorError, TaskExecutor
from stageflow.runner.classifier import (
    FailureCategory,
    FailureClassification,
    classify,
    is_fatal_error,
)
from stageflow.state.models import Stage

logger = logging.getLogger(__name__)

SleepFunction = Callable[[float], Awaitable[Any]]


@dataclass
class RetryPolicy:
    """Retry and timeout settings for one stage call.

    With the defaults the backoff before retry ``n`` (0-indexed) is
    ``min(1000 * 2**n, 5000)`` milliseconds.

    Attributes:
        max_retries: Retries after the first attempt.
        base_delay_seconds: Backoff before the first retry.
        max_delay_seconds: Upper bound for any single backoff.
        timeout_seconds: Per-attempt timeout.
    """

    max_retries: int = 2
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 5.0
    timeout_seconds: float = 120.0

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay_seconds * (2 ** attempt), self.max_delay_seconds)


@dataclass
class StageRunResult:
    """Outcome of a retried stage call.

    Attributes:
        success: True when an attempt produced an output.
        output: The stage payload on success.
        error: Error message on failure.
        category: Failure category on failure.
        recoverable: Whether the failure was classified as recoverable.
        attempts: Number of executor invocations made.
        duration_seconds: Wall-clock time across all attempts.
    """

    success: bool
    output: Optional[Any] = None
    error: Optional[str] = None
    category: Optional[FailureCategory] = None
    recoverable: bool = True
    attempts: int = 0
    duration_seconds: float = 0.0


class _AttemptCancelled(Exception):
    pass


class _AttemptTimedOut(Exception):
    pass


class RetryRunner:
    """Runs executor calls under a RetryPolicy.

    Attributes:
        policy: Default retry policy for calls that do not pass one.

    Example:
        >>> runner = RetryRunner(RetryPolicy(max_retries=2))
        >>> result = await runner.run_with_retry(executor, Stage.BUILD, "{}")
        >>> result.success
        True
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Optional[SleepFunction] = None,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep or asyncio.sleep

    async def run_with_retry(
        self,
        executor: TaskExecutor,
        stage: Stage,
        stage_input: str,
        *,
        policy: Optional[RetryPolicy] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> StageRunResult:
        """Invoke the executor with bounded retries.

        Args:
            executor: The task executor to call.
            stage: The stage being executed.
            stage_input: Serialized stage input.
            policy: Overrides the runner's default policy.
            cancel_event: Set to cancel the call; never retried.

        Returns:
            StageRunResult describing the final outcome.
        """
        policy = policy or self.policy
        start_time = time.monotonic()
        attempts = 0
        last_error = "Unknown error"

        for attempt in range(policy.max_retries + 1):
            if cancel_event is not None and cancel_event.is_set():
                return self._cancelled(stage, attempts, start_time)

            attempts += 1
            try:
                outcome = await self._run_attempt(
                    executor, stage, stage_input, policy, cancel_event
                )
            except _AttemptCancelled:
                return self._cancelled(stage, attempts, start_time)
            except _AttemptTimedOut:
                last_error = (
                    f"Executor call timed out after {policy.timeout_seconds:.1f}s"
                )
                classification = FailureClassification(
                    category=FailureCategory.TIMEOUT, recoverable=True
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = str(exc) or type(exc).__name__
                classification = classify(exc)
            else:
                if not isinstance(outcome, ExecutionResult):
                    outcome = ExecutionResult.success(outcome)
                if outcome.ok:
                    return StageRunResult(
                        success=True,
                        output=outcome.output,
                        attempts=attempts,
                        duration_seconds=time.monotonic() - start_time,
                    )
                last_error = outcome.error or "Unknown error"
                classification = classify(
                    ExecutorError(last_error, category=outcome.category)
                )

            logger.warning(
                "Stage attempt failed",
                extra={
                    "stage": stage.value,
                    "attempt": attempts,
                    "category": classification.category.value,
                    "recoverable": classification.recoverable,
                    "error": last_error,
                },
            )

            if not classification.recoverable or is_fatal_error(last_error):
                return StageRunResult(
                    success=False,
                    error=last_error,
                    category=classification.category,
                    recoverable=classification.recoverable,
                    attempts=attempts,
                    duration_seconds=time.monotonic() - start_time,
                )

            if attempt < policy.max_retries:
                delay = policy.delay_for(attempt)
                logger.info(
                    "Retrying stage in %.1fs",
                    delay,
                    extra={"stage": stage.value, "attempt": attempts},
                )
                if not await self._backoff(delay, cancel_event):
                    return self._cancelled(stage, attempts, start_time)

        return StageRunResult(
            success=False,
            error=f"Failed after {attempts} attempts. Last error: {last_error}",
            category=FailureCategory.RETRY_EXHAUSTED,
            recoverable=False,
            attempts=attempts,
            duration_seconds=time.monotonic() - start_time,
        )

    async def _run_attempt(
        self,
        executor: TaskExecutor,
        stage: Stage,
        stage_input: str,
        policy: RetryPolicy,
        cancel_event: Optional[asyncio.Event],
    ) -> Any:
        """Run one executor call, racing it against timeout and cancellation.

        Raises:
            _AttemptCancelled: If cancel_event was set first.
            _AttemptTimedOut: If the call did not settle within the timeout.
            Exception: Whatever the executor raised.
        """
        call = asyncio.ensure_future(
            executor.execute(
                stage,
                stage_input,
                timeout=policy.timeout_seconds,
                cancel_event=cancel_event,
            )
        )
        waiters = {call}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=policy.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()
            if not call.done():
                call.cancel()

        if call in done:
            if call.cancelled():
                # The executor cancelled itself; this task was not cancelled.
                raise _AttemptCancelled()
            return call.result()
        if cancel_waiter is not None and cancel_waiter in done:
            raise _AttemptCancelled()
        raise _AttemptTimedOut()

    async def _backoff(
        self, delay: float, cancel_event: Optional[asyncio.Event]
    ) -> bool:
        """Sleep before the next attempt.

        Returns:
            False if the run was cancelled while sleeping.
        """
        if cancel_event is None:
            await self._sleep(delay)
            return True

        sleeper = asyncio.ensure_future(self._sleep(delay))
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait(
                {sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()
        return not cancel_event.is_set()

    def _cancelled(
        self, stage: Stage, attempts: int, start_time: float
    ) -> StageRunResult:
        logger.info(
            "Stage call cancelled",
            extra={"stage": stage.value, "attempts": attempts},
        )
        return StageRunResult(
            success=False,
            error="Cancelled: stage call was cancelled",
            category=FailureCategory.CANCELLED,
            recoverable=False,
            attempts=attempts,
            duration_seconds=time.monotonic() - start_time,
        )
