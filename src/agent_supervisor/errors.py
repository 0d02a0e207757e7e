"""Error taxonomy for the agent supervisor.

Startup failures always surface as exactly one of these exceptions from
``LifecycleCoordinator.launch``. Failures after the agent is running are
reported through the exit callback instead.
"""

from pathlib import Path
from typing import Any


class SupervisorError(RuntimeError):
    """Base class for all supervisor errors."""


class Locked(SupervisorError):
    """Lock acquisition exhausted its retries against a live owner."""

    def __init__(self, path: Path | str, pid: int | None = None, message: str | None = None):
        self.path = Path(path)
        self.pid = pid
        if message is None:
            message = f"Lock file is already being held: {self.path}"
            if pid is not None:
                message += f" (PID: {pid})"
        super().__init__(message)


class NotAcquired(SupervisorError):
    """Release was attempted on a lock this process does not hold."""

    def __init__(self, path: Path | str, reason: str = "Lock is not acquired"):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"{reason}: {self.path}")


class HealthTimeout(SupervisorError):
    """The agent never answered its health check within the attempt ceiling."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Health endpoint timed out after {attempts} attempts")


class ProcessError(SupervisorError):
    """The child could not be started or was lost before it became ready."""

    def __init__(self, message: str, *, exit_state: Any = None):
        super().__init__(message)
        self.exit_state = exit_state


class Aborted(SupervisorError):
    """The caller cancelled the operation.

    This is the expected outcome of a deliberate shutdown, not a failure.
    """

    def __init__(self, reason: Any = None):
        self.reason = reason
        super().__init__("Operation aborted" if reason is None else f"Operation aborted: {reason}")
