"""Structured logging setup for the workflow service.

Library modules log through ``logging.getLogger(__name__)`` with
``extra=`` fields. configure_logging routes those records through a
structlog ProcessorFormatter so they come out as JSON lines (or console
output for local runs), with the extra fields as top-level keys.
"""

import logging
import sys
from typing import Any, Dict, Mapping

import structlog


SECRET_FIELD_MARKERS = ("token", "secret", "password")

REDACTED = "***"


def _shared_processors() -> list:
    return [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]


def configure_logging(level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Root log level name.
        json_logs: Render JSON lines when True, console output otherwise.
    """
    shared = _shared_processors()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level.upper())


def redact_secrets(values: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of a settings mapping with secret values masked.

    Example:
        >>> redact_secrets({"executor_token": "abc", "port": 8080})
        {'executor_token': '***', 'port': 8080}
    """
    redacted: Dict[str, Any] = {}
    for key, value in values.items():
        if value and any(marker in key.lower() for marker in SECRET_FIELD_MARKERS):
            redacted[key] = REDACTED
        else:
            redacted[key] = value
    return redacted
