"""Event emitters for workflow progress.

The orchestrator reports progress through an EventEmitter and never
depends on where the events end up. Available sinks:

- LoggingEventEmitter: one structured log record per event
- MetricsEventEmitter (events/metrics.py): Prometheus counters and gauges
- CompositeEventEmitter: fans one event out to several sinks
- NullEventEmitter: drops everything
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Iterable, List, Optional

from stageflow.events.models import EventType, WorkflowEvent


logger = logging.getLogger(__name__)


class EventSinkType(str, Enum):
    """Sinks that create_event_emitter knows how to build."""

    LOGGING = "logging"
    METRICS = "metrics"


class EventEmitter(ABC):
    """Destination for workflow events.

    emit() runs on the orchestrator's event loop between steps, so it
    must return quickly. Exceptions raised here are logged by the
    orchestrator and never fail a run.
    """

    @abstractmethod
    async def emit(self, event: WorkflowEvent) -> None:
        """Deliver one event."""

    async def close(self) -> None:
        """Release sink resources. Most sinks hold none."""


# Events not listed here are logged at INFO.
_EVENT_LOG_LEVELS = {
    EventType.RUN_FAILED: logging.ERROR,
    EventType.STEP_FAILED: logging.ERROR,
    EventType.ERROR: logging.ERROR,
    EventType.ITERATION: logging.WARNING,
    EventType.APPROVAL_REQUESTED: logging.WARNING,
}


class LoggingEventEmitter(EventEmitter):
    """Writes every event as a log record whose extra fields are the event.

    Failures log at ERROR, rewinds and approval requests at WARNING.
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger

    async def emit(self, event: WorkflowEvent) -> None:
        self._logger.log(
            _EVENT_LOG_LEVELS.get(event.event_type, logging.INFO),
            "Workflow event: %s for %s",
            event.event_type.value,
            event.run_id,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Forwards each event to every child sink.

    A child that raises is logged and skipped; the remaining children
    still receive the event.

    Example:
        >>> emitter = CompositeEventEmitter(
        ...     [LoggingEventEmitter(), MetricsEventEmitter()]
        ... )
    """

    def __init__(self, emitters: Optional[Iterable[EventEmitter]] = None):
        self._children: List[EventEmitter] = list(emitters or [])

    def add_emitter(self, emitter: EventEmitter) -> None:
        self._children.append(emitter)

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._children)

    async def emit(self, event: WorkflowEvent) -> None:
        for child in self._children:
            try:
                await child.emit(event)
            except Exception as e:
                logger.error(
                    "Event sink %s failed: %s",
                    type(child).__name__,
                    e,
                    extra={
                        "sink": type(child).__name__,
                        "event_type": event.event_type.value,
                        "run_id": event.run_id,
                    },
                )

    async def close(self) -> None:
        for child in self._children:
            try:
                await child.close()
            except Exception as e:
                logger.error(
                    "Closing event sink %s failed: %s", type(child).__name__, e
                )


class NullEventEmitter(EventEmitter):
    async def emit(self, event: WorkflowEvent) -> None:
        return None


def _build_sink(sink: EventSinkType, logger_name: Optional[str]) -> Optional[EventEmitter]:
    if sink == EventSinkType.LOGGING:
        return LoggingEventEmitter(logger_name=logger_name)
    if sink == EventSinkType.METRICS:
        # metrics.py imports this module
        from stageflow.events.metrics import MetricsEventEmitter

        return MetricsEventEmitter()
    logger.warning("Skipping unknown event sink: %s", sink)
    return None


def create_event_emitter(
    sink_types: Optional[Iterable[EventSinkType]] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Build the emitter for a set of sinks.

    Args:
        sink_types: Sinks to enable; logging only when empty.
        logger_name: Logger used by the logging sink.

    Returns:
        The single sink's emitter, or a CompositeEventEmitter.

    Example:
        >>> isinstance(create_event_emitter(), LoggingEventEmitter)
        True
    """
    sinks = [
        emitter
        for emitter in (_build_sink(s, logger_name) for s in sink_types or ())
        if emitter is not None
    ]
    if not sinks:
        return LoggingEventEmitter(logger_name=logger_name)
    if len(sinks) == 1:
        return sinks[0]
    return CompositeEventEmitter(sinks)
