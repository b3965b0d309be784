"""Pytest configuration for all tests."""

import logging

import pytest
import structlog
from prometheus_client import CollectorRegistry


@pytest.fixture
def workflow_env(monkeypatch):
    """Set the environment variables the workflow service needs."""
    monkeypatch.setenv("STAGEFLOW_EXECUTOR_URL", "http://agents:9000")
    monkeypatch.setenv("STAGEFLOW_EXECUTOR_TOKEN", "test-token")
    monkeypatch.setenv("STAGEFLOW_MAX_ITERATIONS", "2")
    monkeypatch.setenv("STAGEFLOW_LOG_LEVEL", "debug")


@pytest.fixture
def registry():
    """Isolated Prometheus registry."""
    return CollectorRegistry()


@pytest.fixture
def restore_logging():
    """Restore the root logger and structlog after configure_logging()."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    structlog.reset_defaults()
