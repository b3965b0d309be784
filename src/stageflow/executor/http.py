"""HTTP task executor.

Delegates stage work to a remote executor service over HTTP. Each call
POSTs ``{"stage", "executor", "input"}`` to ``{base_url}/stages/{stage}``
and expects ``{"output": {...}}`` or ``{"error": {"category", "message"}}``
back.

Transport problems are reported with messages the failure classifier and
the fatal-error matcher understand:

- 401: "authentication failed"
- 403: "permission denied"
- connection errors: "network connection failed"
- 422: GuardrailViolation
- 5xx and timeouts: recoverable failures

Successful outputs are validated against the stage's payload schema; an
output that does not match is a ModelBehaviorError.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from stageflow.executor.base import ExecutionResult
from stageflow.payloads import validate_stage_payload
from stageflow.runner.classifier import FailureCategory
from stageflow.state.models import Stage
from stageflow.workflow.definition import default_pipeline


logger = logging.getLogger(__name__)


def _default_executor_names() -> Dict[Stage, str]:
    return {spec.stage: spec.executor_name for spec in default_pipeline().stages}


class HttpTaskExecutor:
    """Async task executor backed by a remote HTTP service.

    Retries and backoff are not done here: the retry runner owns them,
    so this client makes exactly one request per call.

    Attributes:
        base_url: Base URL of the executor service.
        token: Optional bearer token.
        timeout: Default request timeout in seconds.
        executor_names: Executor name sent for each stage.

    Example:
        >>> executor = HttpTaskExecutor("http://agents:9000", token="secret")
        >>> async with executor:
        ...     result = await executor.execute(Stage.BUILD, stage_input)
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 120.0,
        executor_names: Optional[Dict[Stage, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the executor.

        Args:
            base_url: Base URL of the executor service.
            token: Bearer token sent with every request, if set.
            timeout: Default request timeout in seconds.
            executor_names: Overrides the executor name sent per stage.
            transport: Optional httpx transport (tests use MockTransport).
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.executor_names = executor_names or _default_executor_names()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._default_headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _default_headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": "stageflow/1.0",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpTaskExecutor":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def execute(
        self,
        stage: Stage,
        serialized_input: str,
        *,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExecutionResult:
        """Run one stage on the remote service.

        Cancellation is enforced by the retry runner, which cancels the
        task awaiting this coroutine.

        Args:
            stage: The stage being executed.
            serialized_input: Deterministic JSON input for the stage.
            timeout: Request timeout in seconds; defaults to self.timeout.
            cancel_event: Unused; see above.

        Returns:
            ExecutionResult with the validated payload or an error.
        """
        stage = Stage(stage)
        body = {
            "stage": stage.value,
            "executor": self.executor_names.get(stage, stage.value),
            "input": serialized_input,
        }
        url = f"/stages/{stage.value}"

        try:
            response = await self.client.post(
                url, json=body, timeout=timeout or self.timeout
            )
        except httpx.TimeoutException as e:
            return self._failure(
                stage,
                f"Executor request timed out: {e}",
                FailureCategory.TIMEOUT.value,
            )
        except httpx.TransportError as e:
            return self._failure(stage, f"network connection failed: {e}")

        if response.status_code == 401:
            return self._failure(stage, "authentication failed (HTTP 401)")
        if response.status_code == 403:
            return self._failure(stage, "permission denied (HTTP 403)")

        try:
            data = response.json()
        except ValueError:
            data = None

        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            error = data["error"]
            return self._failure(
                stage,
                str(error.get("message") or "Executor reported an error"),
                error.get("category"),
            )

        if response.status_code == 422:
            return self._failure(
                stage,
                f"Executor rejected the request (HTTP 422): {response.text[:200]}",
                FailureCategory.GUARDRAIL_VIOLATION.value,
            )
        if response.status_code >= 400:
            return self._failure(
                stage,
                f"Executor service error (HTTP {response.status_code})",
            )

        if not isinstance(data, dict) or "output" not in data:
            return self._failure(
                stage,
                "Executor response has no output",
                FailureCategory.MODEL_BEHAVIOR_ERROR.value,
            )

        try:
            output = validate_stage_payload(stage, data["output"])
        except ValidationError as e:
            return self._failure(
                stage,
                f"Output does not match the {stage.value} schema: "
                f"{e.error_count()} validation error(s)",
                FailureCategory.MODEL_BEHAVIOR_ERROR.value,
            )

        logger.debug("Executor call succeeded", extra={"stage": stage.value})
        return ExecutionResult.success(output)

    def _failure(
        self, stage: Stage, message: str, category: Optional[str] = None
    ) -> ExecutionResult:
        logger.warning(
            "Executor call failed",
            extra={"stage": stage.value, "error": message, "category": category},
        )
        return ExecutionResult.failure(message, category=category)
