"""Pydantic Settings for the agent supervisor.

Every value can be overridden with an ``AGENT_SUPERVISOR_`` environment
variable or a ``.env`` file in the working directory.
"""

import sys
from pathlib import Path
from typing import Any

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.console import Console

from agent_supervisor.constants import (
    DATA_DIR_NAME,
    DEFAULT_API_SERVER_URL_ENV,
    DEFAULT_HEALTH_MAX_ATTEMPTS,
    DEFAULT_HEALTH_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_HOST,
    DEFAULT_LOCK_RETRY_INTERVAL_MS,
    DEFAULT_TERMINATE_GRACE_SECONDS,
    HEALTH_PATH,
    SUBPROCESS_HEALTH_BASE_DELAY_MS,
)
from agent_supervisor.models import BackoffPolicy, LockOptions


class SupervisorSettings(BaseSettings):
    """Settings for launching and supervising a local agent server."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="AGENT_SUPERVISOR_",
        case_sensitive=False,
        extra="ignore",
        validate_assignment=True,
        json_schema_extra={
            "example": {
                "project_path": "/workspace/my-agent",
                "health_base_delay_ms": 5,
                "health_max_attempts": 100,
                "health_backoff": "linear",
                "api_server_url": "http://localhost:4000",
            },
        },
    )

    # Project configuration
    project_path: Path = Field(
        default_factory=Path.cwd, validate_default=True, description="Directory holding the agent project",
    )

    # Network configuration
    host: str = Field(default=DEFAULT_HOST, min_length=1, description="Interface the agent is told to bind")

    health_path: str = Field(default=HEALTH_PATH, pattern=r"^/", description="Readiness endpoint on the agent")

    # Health probing
    health_base_delay_ms: int = Field(
        default=SUBPROCESS_HEALTH_BASE_DELAY_MS, ge=0, le=60_000, description="Base delay between health attempts",
    )

    health_max_attempts: int = Field(
        default=DEFAULT_HEALTH_MAX_ATTEMPTS, ge=1, le=100_000, description="Health attempts before giving up",
    )

    health_backoff: BackoffPolicy = Field(
        default=BackoffPolicy.LINEAR, description="linear: attempt x base delay, fixed: base delay every retry",
    )

    health_request_timeout_seconds: float = Field(
        default=DEFAULT_HEALTH_REQUEST_TIMEOUT_SECONDS, gt=0, le=60, description="Timeout for one health call",
    )

    # Locking
    lock_stale_check: bool = Field(default=True, description="Reclaim locks left behind by dead processes")

    lock_retries: int = Field(default=0, ge=0, le=1000, description="Extra lock attempts before failing")

    lock_retry_interval_ms: int = Field(
        default=DEFAULT_LOCK_RETRY_INTERVAL_MS, ge=0, le=60_000, description="Delay between lock attempts",
    )

    # Upstream API
    api_server_url: str | None = Field(default=None, description="API server URL handed to the agent")

    api_server_url_env: str = Field(
        default=DEFAULT_API_SERVER_URL_ENV,
        pattern=r"^[A-Za-z_][A-Za-z0-9_]*$",
        description="Environment variable carrying the API server URL",
    )

    # Shutdown
    terminate_grace_seconds: float = Field(
        default=DEFAULT_TERMINATE_GRACE_SECONDS, ge=0, le=300, description="Wait after SIGTERM before SIGKILL",
    )

    log_level: str = Field(
        default="INFO", description="Logging level", pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
    )

    @field_validator("project_path")
    @classmethod
    def validate_project_path(cls, v: Path) -> Path:
        """Ensure project path exists and is a directory."""
        path = v.expanduser().resolve()
        if not path.exists():
            raise ValueError(f"Project path does not exist: {path}")
        if not path.is_dir():
            raise ValueError(f"Project path is not a directory: {path}")
        return path

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        """Accept lowercase level names."""
        return v.upper() if isinstance(v, str) else v

    @property
    def data_dir(self) -> Path:
        """Get the directory holding the supervisor's local state."""
        return self.project_path / DATA_DIR_NAME

    @property
    def lock_options(self) -> LockOptions:
        """Get lock acquisition options."""
        return LockOptions(
            stale_check=self.lock_stale_check,
            retries=self.lock_retries,
            retry_interval_ms=self.lock_retry_interval_ms,
        )


def load_settings(**overrides: Any) -> SupervisorSettings:
    """Load settings, reporting configuration errors and exiting."""
    try:
        return SupervisorSettings(**overrides)
    except ValidationError as e:
        console = Console(stderr=True)
        console.print(f"[red]Configuration Error:[/red] {e}")

        if "project_path" in str(e):
            console.print("\n[yellow]Hint:[/yellow] Point the supervisor at an existing directory using one of:")
            console.print("  - AGENT_SUPERVISOR_PROJECT_PATH environment variable")
            console.print("  - --project-path (or --path) option")

        sys.exit(1)
