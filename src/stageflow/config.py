"""Workflow service configuration using pydantic-settings.

WorkflowSettings reads configuration from environment variables with the
STAGEFLOW_ prefix. Only the executor URL is required.
"""

from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from stageflow.runner.retry import RetryPolicy


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class WorkflowSettings(BaseSettings):
    """Workflow service configuration from environment variables.

    All environment variables are prefixed with STAGEFLOW_
    (e.g., STAGEFLOW_EXECUTOR_URL).

    Required fields (must be set via environment variables):
    - executor_url: Base URL of the remote task executor service
    """

    model_config = SettingsConfigDict(
        env_prefix="STAGEFLOW_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Executor Configuration
    # -------------------------------------------------------------------------
    # Base URL of the task executor service
    executor_url: str

    # Bearer token for the executor service
    executor_token: Optional[str] = None

    # Per-attempt timeout for a stage call
    executor_timeout_seconds: float = 120.0

    # -------------------------------------------------------------------------
    # Retry Configuration
    # -------------------------------------------------------------------------
    max_retries: int = 2
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 5.0

    # -------------------------------------------------------------------------
    # Workflow Configuration
    # -------------------------------------------------------------------------
    # Rewind budget per run
    max_iterations: int = 3

    # Gate the design and release stages on approval
    require_approval: bool = False

    # Approve every gated step without asking
    auto_approve: bool = False

    # Approve (with a warning) when no approval handler is available
    approval_fail_open: bool = False

    # Finished runs kept for inspection; the oldest are dropped first
    max_finished_runs: int = 100

    # -------------------------------------------------------------------------
    # Logging Configuration
    # -------------------------------------------------------------------------
    log_level: str = "INFO"

    # Render logs as JSON lines; console rendering otherwise
    log_json: bool = True

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    # Host address to bind the server to
    host: str = "0.0.0.0"

    # Port number for the server
    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("executor_url")
    @classmethod
    def validate_executor_url(cls, v: str) -> str:
        """Validate that the executor URL is a valid URL format."""
        if not v or not v.strip():
            raise ValueError("executor_url cannot be empty")
        if not v.startswith(("http://", "https://")):
            raise ValueError("executor_url must start with http:// or https://")
        return v

    @field_validator("executor_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("executor_timeout_seconds must be positive")
        return v

    @field_validator("max_retries", "max_iterations", "max_finished_runs")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("value must not be negative")
        return v

    @field_validator("retry_base_delay_seconds", "retry_max_delay_seconds")
    @classmethod
    def validate_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("retry delays must not be negative")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize the log level and reject unknown names."""
        level = v.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    def retry_policy(self) -> RetryPolicy:
        """Build the retry policy for stage calls."""
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay_seconds=self.retry_base_delay_seconds,
            max_delay_seconds=self.retry_max_delay_seconds,
            timeout_seconds=self.executor_timeout_seconds,
        )


def get_settings() -> WorkflowSettings:
    """Create and return a WorkflowSettings instance.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return WorkflowSettings()
