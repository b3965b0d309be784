"""Unit tests for the retry runner.

Covers bounded retries, backoff delays, non-recoverable short-circuits,
per-attempt timeouts and cancellation. Backoff sleeps are recorded by a
fake sleep function so no test waits on real delays.
"""

import asyncio
from typing import Any, List

import pytest

from stageflow.executor.base import (
    ExecutionResult,
    MaxTurnsExceeded,
    ToolInvocationError,
)
from stageflow.runner.classifier import FailureCategory
from stageflow.runner.retry import RetryPolicy, RetryRunner
from stageflow.state.models import Stage


def run_async(coro):
    return asyncio.run(coro)


class ScriptedExecutor:
    """Returns (or raises) scripted outcomes in order; the last one repeats."""

    def __init__(self, outcomes: List[Any]):
        self.outcomes = list(outcomes)
        self.calls = 0
        self.timeouts: List[Any] = []

    async def execute(self, stage, serialized_input, *, timeout=None, cancel_event=None):
        self.calls += 1
        self.timeouts.append(timeout)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class BlockingExecutor:
    """Never finishes on its own."""

    def __init__(self):
        self.calls = 0

    async def execute(self, stage, serialized_input, *, timeout=None, cancel_event=None):
        self.calls += 1
        await asyncio.sleep(60)
        return ExecutionResult.success({})


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def runner(sleep):
    return RetryRunner(RetryPolicy(max_retries=2), sleep=sleep)


class TestRetryPolicy:
    def test_default_backoff_schedule(self):
        policy = RetryPolicy()
        assert [policy.delay_for(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_retries == 2
        assert policy.timeout_seconds == 120.0


class TestSuccess:
    def test_first_attempt_success(self, runner, sleep):
        executor = ScriptedExecutor([ExecutionResult.success({"summary": "ok"})])

        result = run_async(runner.run_with_retry(executor, Stage.BUILD, "{}"))

        assert result.success
        assert result.output == {"summary": "ok"}
        assert result.attempts == 1
        assert executor.calls == 1
        assert sleep.delays == []

    def test_plain_return_value_is_success(self, runner):
        executor = ScriptedExecutor([{"summary": "raw"}])

        result = run_async(runner.run_with_retry(executor, Stage.BUILD, "{}"))

        assert result.success
        assert result.output == {"summary": "raw"}

    def test_timeout_is_passed_to_executor(self, sleep):
        runner = RetryRunner(RetryPolicy(timeout_seconds=7.5), sleep=sleep)
        executor = ScriptedExecutor([ExecutionResult.success({})])

        run_async(runner.run_with_retry(executor, Stage.BUILD, "{}"))

        assert executor.timeouts == [7.5]

    def test_transient_failure_then_success(self, runner, sleep):
        executor = ScriptedExecutor(
            [ToolInvocationError("tool crashed"), ExecutionResult.success({"ok": 1})]
        )

        result = run_async(runner.run_with_retry(executor, Stage.BUILD, "{}"))

        assert result.success
        assert result.attempts == 2
        assert executor.calls == 2
        assert sleep.delays == [1.0]

    def test_failure_result_without_category_is_retried(self, runner):
        executor = ScriptedExecutor(
            [
                ExecutionResult.failure("flaky"),
                RuntimeError("socket closed"),
                ExecutionResult.success({"ok": 1}),
            ]
        )

        result = run_async(runner.run_with_retry(executor, Stage.BUILD, "{}"))

        assert result.success
        assert executor.calls == 3

    def test_policy_override(self, runner, sleep):
        executor = ScriptedExecutor([ToolInvocationError("tool crashed")])

        result = run_async(
            runner.run_with_retry(
                executor, Stage.BUILD, "{}", policy=RetryPolicy(max_retries=0)
            )
        )

        assert not result.success
        assert executor.calls == 1
        assert sleep.delays == []


class TestExhaustion:
    def test_retry_exhausted_carries_last_error(self, runner, sleep):
        executor = ScriptedExecutor([ToolInvocationError("tool crashed")])

        result = run_async(runner.run_with_retry(executor, Stage.BUILD, "{}"))

        assert not result.success
        assert result.category == FailureCategory.RETRY_EXHAUSTED
        assert result.recoverable is False
        assert result.attempts == 3
        assert executor.calls == 3
        assert result.error == "Failed after 3 attempts. Last error: tool crashed"
        assert sleep.delays == [1.0, 2.0]

    def test_backoff_is_capped(self, sleep):
        runner = RetryRunner(RetryPolicy(max_retries=4), sleep=sleep)
        executor = ScriptedExecutor([ToolInvocationError("tool crashed")])

        run_async(runner.run_with_retry(executor, Stage.BUILD, "{}"))

        assert sleep.delays == [1.0, 2.0, 4.0, 5.0]


class TestNonRecoverable:
    def test_max_turns_is_not_retried(self, runner, sleep):
        executor = ScriptedExecutor([MaxTurnsExceeded("10 turns used")])

        result = run_async(runner.run_with_retry(executor, Stage.DESIGN, "{}"))

        assert not result.success
        assert result.category == FailureCategory.MAX_TURNS_EXCEEDED
        assert result.recoverable is False
        assert executor.calls == 1
        assert sleep.delays == []

    def test_failure_result_with_category(self, runner):
        executor = ScriptedExecutor(
            [ExecutionResult.failure("budget", category="MaxTurnsExceeded")]
        )

        result = run_async(runner.run_with_retry(executor, Stage.DESIGN, "{}"))

        assert result.category == FailureCategory.MAX_TURNS_EXCEEDED
        assert executor.calls == 1

    def test_fatal_message_is_not_retried(self, runner, sleep):
        executor = ScriptedExecutor(
            [ExecutionResult.failure("authentication failed (HTTP 401)")]
        )

        result = run_async(runner.run_with_retry(executor, Stage.RESEARCH, "{}"))

        assert not result.success
        assert result.category == FailureCategory.UNKNOWN
        assert result.recoverable is True
        assert result.error == "authentication failed (HTTP 401)"
        assert executor.calls == 1
        assert sleep.delays == []


class TestTimeout:
    def test_timeout_is_retried_then_exhausted(self, sleep):
        runner = RetryRunner(
            RetryPolicy(max_retries=1, timeout_seconds=0.01), sleep=sleep
        )
        executor = BlockingExecutor()

        result = run_async(runner.run_with_retry(executor, Stage.BUILD, "{}"))

        assert not result.success
        assert result.category == FailureCategory.RETRY_EXHAUSTED
        assert "timed out" in result.error
        assert executor.calls == 2
        assert sleep.delays == [1.0]


class TestCancellation:
    def test_cancel_before_first_attempt(self, runner):
        executor = ScriptedExecutor([ExecutionResult.success({})])

        async def scenario():
            event = asyncio.Event()
            event.set()
            return await runner.run_with_retry(
                executor, Stage.BUILD, "{}", cancel_event=event
            )

        result = run_async(scenario())

        assert result.category == FailureCategory.CANCELLED
        assert result.recoverable is False
        assert result.attempts == 0
        assert executor.calls == 0

    def test_cancel_during_attempt(self, runner, sleep):
        executor = BlockingExecutor()

        async def scenario():
            event = asyncio.Event()
            asyncio.get_running_loop().call_later(0.01, event.set)
            return await runner.run_with_retry(
                executor, Stage.BUILD, "{}", cancel_event=event
            )

        result = run_async(scenario())

        assert result.category == FailureCategory.CANCELLED
        assert result.attempts == 1
        assert executor.calls == 1
        assert sleep.delays == []

    def test_cancel_during_backoff(self):
        executor = ScriptedExecutor([ToolInvocationError("tool crashed")])

        async def scenario():
            event = asyncio.Event()

            async def cancelling_sleep(delay):
                event.set()
                await asyncio.sleep(60)

            runner = RetryRunner(RetryPolicy(max_retries=2), sleep=cancelling_sleep)
            return await runner.run_with_retry(
                executor, Stage.BUILD, "{}", cancel_event=event
            )

        result = run_async(scenario())

        assert result.category == FailureCategory.CANCELLED
        assert result.attempts == 1
        assert executor.calls == 1

    def test_executor_cancelling_itself_is_a_cancelled_result(self, runner, sleep):
        executor = ScriptedExecutor([asyncio.CancelledError()])

        result = run_async(runner.run_with_retry(executor, Stage.BUILD, "{}"))

        assert not result.success
        assert result.category == FailureCategory.CANCELLED
        assert result.recoverable is False
        assert result.attempts == 1
        assert executor.calls == 1
        assert sleep.delays == []
