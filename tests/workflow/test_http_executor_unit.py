"""Unit tests for the HTTP task executor.

Requests are served by httpx.MockTransport, so no network is used.
"""

import asyncio
import json
from typing import Callable, List

import httpx
import pytest

from stageflow.executor.base import ExecutionResult
from stageflow.executor.http import HttpTaskExecutor
from stageflow.runner.classifier import FailureCategory
from stageflow.runner.retry import RetryPolicy, RetryRunner
from stageflow.state.models import Stage


def run_async(coro):
    return asyncio.run(coro)


BUILD_OUTPUT = {"summary": "built", "created_files": ["app.py"]}


class RecordingHandler:
    """MockTransport handler that records requests."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]):
        self.respond = respond
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)


def _execute(handler, stage=Stage.BUILD, token=None) -> ExecutionResult:
    async def scenario():
        async with HttpTaskExecutor(
            "http://agents:9000/",
            token=token,
            transport=httpx.MockTransport(handler),
        ) as executor:
            return await executor.execute(stage, '{"stage": "build"}', timeout=5.0)

    return run_async(scenario())


class TestRequest:
    def test_posts_stage_body(self):
        handler = RecordingHandler(
            lambda request: httpx.Response(200, json={"output": BUILD_OUTPUT})
        )

        _execute(handler, token="secret")

        request = handler.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "http://agents:9000/stages/build"
        assert request.headers["Authorization"] == "Bearer secret"
        assert json.loads(request.content) == {
            "stage": "build",
            "executor": "Implementer",
            "input": '{"stage": "build"}',
        }

    def test_no_token_no_authorization_header(self):
        handler = RecordingHandler(
            lambda request: httpx.Response(200, json={"output": BUILD_OUTPUT})
        )

        _execute(handler)

        assert "Authorization" not in handler.requests[0].headers


class TestResponses:
    def test_success_is_validated(self):
        result = _execute(
            lambda request: httpx.Response(200, json={"output": BUILD_OUTPUT})
        )

        assert result.ok
        assert result.output["created_files"] == ["app.py"]
        assert result.output["modified_files"] == []

    def test_schema_mismatch_is_model_behavior_error(self):
        result = _execute(
            lambda request: httpx.Response(200, json={"output": {"created_files": []}})
        )

        assert not result.ok
        assert result.category == FailureCategory.MODEL_BEHAVIOR_ERROR.value
        assert "build schema" in result.error

    def test_missing_output(self):
        result = _execute(lambda request: httpx.Response(200, json={"status": "ok"}))

        assert result.category == FailureCategory.MODEL_BEHAVIOR_ERROR.value

    def test_error_body_carries_category(self):
        body = {"error": {"category": "MaxTurnsExceeded", "message": "10 turns used"}}
        result = _execute(lambda request: httpx.Response(500, json=body))

        assert result.error == "10 turns used"
        assert result.category == "MaxTurnsExceeded"

    @pytest.mark.parametrize(
        "status, message",
        [
            (401, "authentication failed (HTTP 401)"),
            (403, "permission denied (HTTP 403)"),
            (503, "Executor service error (HTTP 503)"),
        ],
    )
    def test_status_codes(self, status, message):
        result = _execute(lambda request: httpx.Response(status, text="nope"))

        assert result.error == message
        assert result.category is None

    def test_422_is_guardrail_violation(self):
        result = _execute(lambda request: httpx.Response(422, text="blocked"))

        assert result.category == FailureCategory.GUARDRAIL_VIOLATION.value

    def test_connection_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = _execute(refuse)

        assert result.error.startswith("network connection failed")

    def test_timeout(self):
        def slow(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        result = _execute(slow)

        assert result.category == FailureCategory.TIMEOUT.value


class TestWithRetryRunner:
    def _run(self, handler):
        async def no_sleep(delay):
            return None

        async def scenario():
            async with HttpTaskExecutor(
                "http://agents:9000", transport=httpx.MockTransport(handler)
            ) as executor:
                runner = RetryRunner(RetryPolicy(max_retries=2), sleep=no_sleep)
                return await runner.run_with_retry(executor, Stage.BUILD, "{}")

        return run_async(scenario())

    def test_authentication_failure_is_not_retried(self):
        handler = RecordingHandler(lambda request: httpx.Response(401))

        result = self._run(handler)

        assert not result.success
        assert result.recoverable is True
        assert result.error == "authentication failed (HTTP 401)"
        assert len(handler.requests) == 1

    def test_server_error_is_retried(self):
        responses = [
            httpx.Response(503),
            httpx.Response(200, json={"output": BUILD_OUTPUT}),
        ]
        handler = RecordingHandler(lambda request: responses.pop(0))

        result = self._run(handler)

        assert result.success
        assert len(handler.requests) == 2
