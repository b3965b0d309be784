"""Prometheus metrics for workflow observability.

Metrics are exposed at the `/metrics` endpoint in Prometheus format.

Metrics Defined:
- stageflow_runs_total: Counter of finished runs by final status
- stageflow_step_failures_total: Counter of failed steps by stage and category
- stageflow_step_duration_seconds: Histogram of step execution time
- stageflow_iterations_total: Counter of quality rewinds
- stageflow_pending_approvals: Gauge of approvals currently waiting

The MetricsEventEmitter updates these metrics from workflow events.
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from stageflow.events.emitter import EventEmitter
from stageflow.events.models import EventType, WorkflowEvent


logger = logging.getLogger(__name__)


# Step durations range from sub-second fakes to multi-minute agent turns
DEFAULT_DURATION_BUCKETS = (
    0.5,
    1.0,
    5.0,
    10.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
)


class WorkflowMetrics:
    """Container for all workflow Prometheus metrics.

    Supports custom registries so tests can observe metrics in isolation.

    Metrics:
        runs_total: Finished runs. Labels: status
        step_failures_total: Failed steps. Labels: stage, category
        step_duration_seconds: Step execution time. Labels: stage
        iterations_total: Quality rewinds across all runs.
        pending_approvals: Approvals currently waiting for a decision.

    Example:
        >>> metrics = WorkflowMetrics(registry=CollectorRegistry())
        >>> metrics.record_run_finished("completed")
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.runs_total = Counter(
            "stageflow_runs_total",
            "Total number of workflow runs that reached a final status",
            labelnames=["status"],
            registry=self.registry,
        )

        self.step_failures_total = Counter(
            "stageflow_step_failures_total",
            "Total number of workflow steps that failed",
            labelnames=["stage", "category"],
            registry=self.registry,
        )

        self.step_duration_seconds = Histogram(
            "stageflow_step_duration_seconds",
            "Time spent executing workflow steps in seconds",
            labelnames=["stage"],
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.iterations_total = Counter(
            "stageflow_iterations_total",
            "Total number of rework iterations triggered by quality failures",
            registry=self.registry,
        )

        self.pending_approvals = Gauge(
            "stageflow_pending_approvals",
            "Current number of steps waiting for approval",
            registry=self.registry,
        )

    def record_run_finished(self, status: str) -> None:
        self.runs_total.labels(status=status).inc()

    def record_step_failed(self, stage: str, category: str) -> None:
        self.step_failures_total.labels(stage=stage, category=category).inc()

    def record_step_duration(self, stage: str, duration_seconds: float) -> None:
        self.step_duration_seconds.labels(stage=stage).observe(duration_seconds)

    def record_iteration(self) -> None:
        self.iterations_total.inc()

    def update_pending_approvals(self, delta: int) -> None:
        """Adjust the pending approvals gauge, never going below zero."""
        current = self.pending_approvals._value.get()
        self.pending_approvals.set(max(0, current + delta))


# Global metrics instance for the default registry
_default_metrics: Optional[WorkflowMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> WorkflowMetrics:
    """Get or create the workflow metrics instance.

    Args:
        registry: Optional Prometheus registry. If None, returns the
                  global metrics instance for the default registry.
    """
    global _default_metrics

    if registry is not None:
        return WorkflowMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = WorkflowMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate Prometheus metrics output for the /metrics endpoint.

    Args:
        registry: Optional Prometheus registry. If None, uses the
                  default REGISTRY.

    Returns:
        bytes: Prometheus metrics in text format.
    """
    target_registry = registry or REGISTRY
    return generate_latest(target_registry)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    Handled events:
    - RUN_COMPLETED / RUN_FAILED: runs_total by final status
    - STEP_COMPLETED: step duration
    - STEP_FAILED: step failures and duration
    - ITERATION: iterations_total
    - APPROVAL_REQUESTED / APPROVAL_RESOLVED: pending approvals gauge

    Attributes:
        metrics: The WorkflowMetrics instance to update.
    """

    def __init__(
        self,
        metrics: Optional[WorkflowMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        if metrics is not None:
            self._metrics = metrics
        else:
            self._metrics = get_metrics(registry)

    @property
    def metrics(self) -> WorkflowMetrics:
        return self._metrics

    async def emit(self, event: WorkflowEvent) -> None:
        try:
            self._dispatch(event)
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={
                    "event_type": event.event_type.value,
                    "run_id": event.run_id,
                    "error": str(e),
                },
            )

    def _dispatch(self, event: WorkflowEvent) -> None:
        stage = event.stage.value if event.stage else "unknown"
        event_type = event.event_type

        if event_type == EventType.RUN_COMPLETED:
            self._metrics.record_run_finished("completed")
        elif event_type == EventType.RUN_FAILED:
            self._metrics.record_run_finished("failed")
        elif event_type == EventType.STEP_COMPLETED:
            self._observe_duration(stage, event)
        elif event_type == EventType.STEP_FAILED:
            category = event.details.get("category") or "Unknown"
            self._metrics.record_step_failed(stage, str(category))
            self._observe_duration(stage, event)
        elif event_type == EventType.ITERATION:
            self._metrics.record_iteration()
        elif event_type == EventType.APPROVAL_REQUESTED:
            self._metrics.update_pending_approvals(+1)
        elif event_type == EventType.APPROVAL_RESOLVED:
            self._metrics.update_pending_approvals(-1)

    def _observe_duration(self, stage: str, event: WorkflowEvent) -> None:
        duration = event.details.get("duration_seconds")
        if duration is not None:
            self._metrics.record_step_duration(stage, float(duration))
