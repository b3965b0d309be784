"""FastAPI application hosting workflow runs.

Runs are started in the background, inspected through snapshots and
steered by human approvals. Everything is kept in-process; a restart
loses all runs. Only the newest finished runs are kept.

Endpoints:
- GET  /health: liveness probe
- GET  /metrics: Prometheus metrics
- POST /runs: start a run (202)
- GET  /runs/{run_id}: current run snapshot
- GET  /runs/{run_id}/approvals: approvals waiting for a decision
- POST /runs/{run_id}/approvals/{step_id}: approve or decline a step
- POST /runs/{run_id}/cancel: cancel a run
- DELETE /runs/{run_id}: forget a finished run
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import CollectorRegistry
from pydantic import BaseModel, Field

from stageflow.approval.gate import ApprovalPolicy
from stageflow.approval.queue import ApprovalNotFoundError, ApprovalQueue
from stageflow.config import WorkflowSettings, get_settings
from stageflow.events.emitter import CompositeEventEmitter, LoggingEventEmitter
from stageflow.events.metrics import (
    MetricsEventEmitter,
    generate_metrics_output,
    get_metrics,
)
from stageflow.executor.base import TaskExecutor
from stageflow.executor.http import HttpTaskExecutor
from stageflow.logging_config import configure_logging, redact_secrets
from stageflow.state.models import RunState
from stageflow.workflow.definition import default_pipeline
from stageflow.workflow.orchestrator import WorkflowOrchestrator

logger = logging.getLogger(__name__)


class RunRequest(BaseModel):
    """Body of POST /runs."""

    request: str = Field(..., min_length=1)
    max_iterations: Optional[int] = Field(default=None, ge=0)
    require_approval: Optional[bool] = None


class ApprovalDecision(BaseModel):
    """Body of POST /runs/{run_id}/approvals/{step_id}."""

    approved: bool


@dataclass
class HostedRun:
    orchestrator: WorkflowOrchestrator
    task: "asyncio.Task[RunState]"


class WorkflowService:
    """Owns the runs hosted by one application instance.

    Attributes:
        settings: Service configuration.
        executor: Task executor shared by all runs.
        approvals: Approval queue shared by all runs.
    """

    def __init__(
        self,
        settings: WorkflowSettings,
        executor: TaskExecutor,
        registry: Optional[CollectorRegistry] = None,
    ):
        self.settings = settings
        self.executor = executor
        self.approvals = ApprovalQueue()
        self._runs: Dict[str, HostedRun] = {}
        self._event_emitter = CompositeEventEmitter(
            [
                LoggingEventEmitter(),
                MetricsEventEmitter(metrics=get_metrics(registry)),
            ]
        )

    def start_run(self, body: RunRequest) -> WorkflowOrchestrator:
        """Create a run and schedule it on the running event loop."""
        require_approval = (
            self.settings.require_approval
            if body.require_approval is None
            else body.require_approval
        )
        max_iterations = (
            self.settings.max_iterations
            if body.max_iterations is None
            else body.max_iterations
        )
        orchestrator = WorkflowOrchestrator.create_workflow(
            body.request,
            default_pipeline(
                require_approval=require_approval,
                max_iterations=max_iterations,
            ),
            executor=self.executor,
            approval_handler=self.approvals,
            approval_policy=ApprovalPolicy(
                auto_approve=self.settings.auto_approve,
                fail_open=self.settings.approval_fail_open,
            ),
            retry_policy=self.settings.retry_policy(),
            event_emitter=self._event_emitter,
        )
        self._evict_finished()
        task = asyncio.create_task(orchestrator.execute_workflow())
        self._runs[orchestrator.run_id] = HostedRun(orchestrator, task)
        logger.info(
            "Run scheduled",
            extra={
                "run_id": orchestrator.run_id,
                "require_approval": require_approval,
                "max_iterations": max_iterations,
            },
        )
        return orchestrator

    def get(self, run_id: str) -> HostedRun:
        hosted = self._runs.get(run_id)
        if hosted is None:
            raise HTTPException(status_code=404, detail=f"Unknown run: {run_id}")
        return hosted

    def delete(self, run_id: str) -> None:
        """Forget a finished run.

        Raises:
            HTTPException: 404 for an unknown run, 409 while it is running.
        """
        hosted = self.get(run_id)
        if not hosted.task.done():
            raise HTTPException(
                status_code=409, detail=f"Run is still running: {run_id}"
            )
        del self._runs[run_id]
        logger.info("Run deleted", extra={"run_id": run_id})

    def _evict_finished(self) -> None:
        """Drop the oldest finished runs beyond max_finished_runs."""
        finished = [run_id for run_id, h in self._runs.items() if h.task.done()]
        excess = len(finished) - self.settings.max_finished_runs
        for run_id in finished[:max(excess, 0)]:
            del self._runs[run_id]
        if excess > 0:
            logger.info(
                "Evicted finished runs",
                extra={"evicted": excess, "retained": len(self._runs)},
            )

    def cancel(self, run_id: str) -> int:
        """Cancel a run and decline its waiting approvals."""
        hosted = self.get(run_id)
        hosted.orchestrator.cancel()
        return self.approvals.cancel_run(run_id)

    async def shutdown(self) -> None:
        """Cancel every unfinished run and wait for it to finalize."""
        pending = [h for h in self._runs.values() if not h.task.done()]
        for hosted in pending:
            hosted.orchestrator.cancel()
            self.approvals.cancel_run(hosted.orchestrator.run_id)
        if pending:
            await asyncio.gather(*(h.task for h in pending), return_exceptions=True)
        await self._event_emitter.close()


def _log_configuration(settings: WorkflowSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info(
        "Workflow service configuration",
        extra=redact_secrets(settings.model_dump()),
    )


def create_app(
    settings: Optional[WorkflowSettings] = None,
    executor: Optional[TaskExecutor] = None,
    registry: Optional[CollectorRegistry] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Service settings; read from the environment at startup
            when omitted.
        executor: Task executor; an HttpTaskExecutor built from the
            settings when omitted.
        registry: Prometheus registry; the default registry when omitted.

    Returns:
        The configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or get_settings()
        configure_logging(cfg.log_level, cfg.log_json)
        logger.info("Workflow service starting up...")
        _log_configuration(cfg)

        owned_executor: Optional[HttpTaskExecutor] = None
        task_executor = executor
        if task_executor is None:
            owned_executor = HttpTaskExecutor(
                cfg.executor_url,
                token=cfg.executor_token,
                timeout=cfg.executor_timeout_seconds,
            )
            task_executor = owned_executor

        app.state.service = WorkflowService(cfg, task_executor, registry)
        logger.info("Workflow service started successfully")

        yield

        logger.info("Workflow service shutting down...")
        await app.state.service.shutdown()
        if owned_executor is not None:
            await owned_executor.close()
        app.state.service = None
        logger.info("Workflow service shutdown complete")

    app = FastAPI(
        title="stageflow",
        description="Multi-stage agent workflow orchestration",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.service = None

    def _service(request: Request) -> WorkflowService:
        service = request.app.state.service
        if service is None:
            raise HTTPException(status_code=503, detail="Service not initialized")
        return service

    @app.get("/health")
    async def health():
        """Liveness probe endpoint."""
        return {"status": "healthy"}

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics():
        """Prometheus metrics endpoint."""
        return PlainTextResponse(generate_metrics_output(registry))

    @app.post("/runs", status_code=202)
    async def start_run(body: RunRequest, request: Request):
        orchestrator = _service(request).start_run(body)
        return {"run_id": orchestrator.run_id, "status": "accepted"}

    @app.get("/runs/{run_id}")
    async def get_run(run_id: str, request: Request) -> Dict[str, Any]:
        hosted = _service(request).get(run_id)
        return hosted.orchestrator.snapshot().model_dump(mode="json")

    @app.get("/runs/{run_id}/approvals")
    async def list_approvals(run_id: str, request: Request) -> List[Dict[str, Any]]:
        service = _service(request)
        service.get(run_id)
        return [
            {
                "step_id": pending.step_id,
                "message": pending.message,
                "payload": pending.payload,
                "requested_at": pending.requested_at.isoformat(),
            }
            for pending in service.approvals.pending(run_id)
        ]

    @app.post("/runs/{run_id}/approvals/{step_id}")
    async def resolve_approval(
        run_id: str, step_id: str, decision: ApprovalDecision, request: Request
    ):
        service = _service(request)
        service.get(run_id)
        try:
            service.approvals.resolve(run_id, step_id, decision.approved)
        except ApprovalNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {"run_id": run_id, "step_id": step_id, "approved": decision.approved}

    @app.post("/runs/{run_id}/cancel", status_code=202)
    async def cancel_run(run_id: str, request: Request):
        declined = _service(request).cancel(run_id)
        return {"run_id": run_id, "status": "cancelling", "declined_approvals": declined}

    @app.delete("/runs/{run_id}")
    async def delete_run(run_id: str, request: Request):
        _service(request).delete(run_id)
        return {"run_id": run_id, "status": "deleted"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "stageflow.main:app",
        host=_settings.host,
        port=_settings.port,
        reload=False,
    )
