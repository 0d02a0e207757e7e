"""Health probing models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class BackoffPolicy(str, Enum):
    """Delay policy between health attempts."""

    LINEAR = "linear"
    FIXED = "fixed"


class HealthCheckResult(BaseModel):
    """Result of a single health attempt."""

    attempt: int = Field(..., ge=1)
    ok: bool
    error: str | None = Field(default=None)
    timestamp: datetime = Field(default_factory=datetime.now)
    duration_ms: int | None = Field(default=None, description="Call duration in milliseconds")


class HealthState(BaseModel):
    """Progress of a readiness probe.

    Only the probe mutates it. ``attempts`` never decreases and ``ready``
    never reverts once set.
    """

    attempts: int = Field(default=0, ge=0)
    ready: bool = Field(default=False)
    history: list[HealthCheckResult] = Field(default_factory=list)

    def record(self, result: HealthCheckResult) -> None:
        """Record one completed attempt."""
        self.attempts += 1
        self.history.append(result)

        # Maintain history limit
        if len(self.history) > 100:
            self.history = self.history[-100:]

        if result.ok:
            self.ready = True

    @property
    def last_error(self) -> str | None:
        """Get the error of the most recent failed attempt."""
        for result in reversed(self.history):
            if not result.ok:
                return result.error
        return None
