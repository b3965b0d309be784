"""Tests for configuration loading."""

import pytest
from pydantic import ValidationError

from stageflow.config import WorkflowSettings, get_settings
from stageflow.runner.retry import RetryPolicy


class TestWorkflowSettings:
    """Tests for WorkflowSettings."""

    def test_load_from_env(self, workflow_env):
        """Test that settings load from STAGEFLOW_ variables."""
        settings = get_settings()

        assert settings.executor_url == "http://agents:9000"
        assert settings.executor_token == "test-token"
        assert settings.max_iterations == 2
        assert settings.log_level == "DEBUG"

    def test_defaults(self, monkeypatch):
        """Test default values when only the executor URL is set."""
        monkeypatch.setenv("STAGEFLOW_EXECUTOR_URL", "https://agents.example.com")

        settings = WorkflowSettings()

        assert settings.executor_token is None
        assert settings.executor_timeout_seconds == 120.0
        assert settings.max_retries == 2
        assert settings.max_iterations == 3
        assert settings.require_approval is False
        assert settings.auto_approve is False
        assert settings.approval_fail_open is False
        assert settings.max_finished_runs == 100
        assert settings.log_json is True
        assert settings.port == 8080

    def test_executor_url_is_required(self, monkeypatch):
        monkeypatch.delenv("STAGEFLOW_EXECUTOR_URL", raising=False)
        with pytest.raises(ValidationError):
            WorkflowSettings()

    @pytest.mark.parametrize(
        "field, value",
        [
            ("executor_url", "agents:9000"),
            ("executor_url", "   "),
            ("executor_timeout_seconds", 0),
            ("max_retries", -1),
            ("max_iterations", -1),
            ("max_finished_runs", -1),
            ("retry_base_delay_seconds", -0.5),
            ("log_level", "verbose"),
            ("port", 70000),
        ],
    )
    def test_invalid_values(self, field, value):
        values = {"executor_url": "http://agents:9000", field: value}
        with pytest.raises(ValidationError):
            WorkflowSettings(**values)

    def test_retry_policy(self):
        settings = WorkflowSettings(
            executor_url="http://agents:9000",
            max_retries=4,
            retry_base_delay_seconds=0.5,
            retry_max_delay_seconds=2.0,
            executor_timeout_seconds=30.0,
        )

        assert settings.retry_policy() == RetryPolicy(
            max_retries=4,
            base_delay_seconds=0.5,
            max_delay_seconds=2.0,
            timeout_seconds=30.0,
        )
