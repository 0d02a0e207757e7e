"""Child process exit models."""

import signal as signal_module
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ExitStatus(str, Enum):
    """Lifecycle of a child process."""

    RUNNING = "running"
    EXITED = "exited"
    ABORTED = "aborted"


class ExitState(BaseModel):
    """How a child process ended (or that it has not ended yet)."""

    model_config = ConfigDict(frozen=True)

    status: ExitStatus = Field(default=ExitStatus.RUNNING)
    code: int | None = Field(default=None, description="Exit code, when the process exited normally")
    signal: str | None = Field(default=None, description="Signal name, when the process was killed")
    reason: str | None = Field(default=None, description="Why the process was aborted")

    @property
    def is_running(self) -> bool:
        """Check if the process is still running."""
        return self.status == ExitStatus.RUNNING

    @classmethod
    def from_returncode(cls, returncode: int) -> "ExitState":
        """Build an exit state from a subprocess return code.

        Negative return codes mean the child was killed by that signal.
        """
        if returncode < 0:
            try:
                name = signal_module.Signals(-returncode).name
            except ValueError:
                name = f"SIG{-returncode}"
            return cls(status=ExitStatus.EXITED, code=None, signal=name)
        return cls(status=ExitStatus.EXITED, code=returncode)

    def as_aborted(self, reason: str) -> "ExitState":
        """Mark this exit as caused by cancellation, keeping the code or signal."""
        return self.model_copy(update={"status": ExitStatus.ABORTED, "reason": reason})
