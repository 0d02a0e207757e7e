"""Launch request and lifecycle state models."""

from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import Field, field_validator

from agent_supervisor.models.base import CommandModel, TimestampedModel


class LifecycleState(str, Enum):
    """States of a single launch request."""

    IDLE = "idle"
    LAUNCHING = "launching"
    AWAITING_HEALTH = "awaiting_health"
    READY = "ready"
    RUNNING = "running"
    EXITED = "exited"
    ABORTED = "aborted"
    TIMED_OUT = "timed_out"
    FAILED_STARTUP = "failed_startup"

    @property
    def is_terminal(self) -> bool:
        """Check if no further transitions are possible."""
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        LifecycleState.EXITED,
        LifecycleState.ABORTED,
        LifecycleState.TIMED_OUT,
        LifecycleState.FAILED_STARTUP,
    }
)

# Allowed forward edges; any non-terminal state may also move to ABORTED
TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    LifecycleState.IDLE: frozenset({LifecycleState.LAUNCHING, LifecycleState.FAILED_STARTUP}),
    LifecycleState.LAUNCHING: frozenset({LifecycleState.AWAITING_HEALTH, LifecycleState.FAILED_STARTUP}),
    LifecycleState.AWAITING_HEALTH: frozenset(
        {LifecycleState.READY, LifecycleState.TIMED_OUT, LifecycleState.FAILED_STARTUP}
    ),
    LifecycleState.READY: frozenset({LifecycleState.RUNNING, LifecycleState.FAILED_STARTUP}),
    LifecycleState.RUNNING: frozenset({LifecycleState.EXITED}),
}


class LifecycleTransition(TimestampedModel):
    """One recorded state change."""

    from_state: LifecycleState
    to_state: LifecycleState
    reason: str | None = None


class Lifecycle(TimestampedModel):
    """Current state of a launch request and how it got there."""

    state: LifecycleState = Field(default=LifecycleState.IDLE)
    history: list[LifecycleTransition] = Field(default_factory=list)

    def can_transition(self, new_state: LifecycleState) -> bool:
        """Check if moving to ``new_state`` is allowed."""
        if self.state.is_terminal:
            return False
        if new_state == LifecycleState.ABORTED:
            return True
        return new_state in TRANSITIONS.get(self.state, frozenset())

    def transition(self, new_state: LifecycleState, reason: str | None = None) -> None:
        """Move to ``new_state``.

        Raises:
            ValueError: If the transition is not allowed from the current state
        """
        if not self.can_transition(new_state):
            raise ValueError(f"Invalid lifecycle transition: {self.state.value} -> {new_state.value}")
        self.history.append(LifecycleTransition(from_state=self.state, to_state=new_state, reason=reason))
        self.state = new_state
        self.touch()

    @property
    def is_terminal(self) -> bool:
        """Check if the launch has reached a final state."""
        return self.state.is_terminal

    @property
    def last_changed(self) -> datetime:
        """Get when the state last changed."""
        return self.updated_at or self.created_at


class LaunchSpec(CommandModel):
    """Everything needed to launch one agent process."""

    env: dict[str, str] | None = Field(
        default=None, description="Child environment; defaults to the supervisor's own environment",
    )
    cwd: Path | None = Field(default=None, description="Working directory for the child")
    lock_path: Path | None = Field(default=None, description="Resource to lock for the agent's lifetime")
    api_server_url: str | None = Field(default=None, description="Upstream API URL passed to the child")

    @field_validator("cwd")
    @classmethod
    def validate_cwd(cls, v: Path | None) -> Path | None:
        """Ensure the working directory exists when given."""
        if v is None:
            return v
        v = v.expanduser().resolve()
        if not v.is_dir():
            raise ValueError(f"Working directory does not exist: {v}")
        return v
