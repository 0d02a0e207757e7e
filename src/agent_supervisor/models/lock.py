"""Lock file models."""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from agent_supervisor.constants import DEFAULT_LOCK_RETRY_INTERVAL_MS, LOCK_SUFFIX


def lock_file_path(path: Path | str) -> Path:
    """Get the marker file guarding ``path`` (``<path>.lock``, absolute)."""
    resolved = Path(path).expanduser().resolve()
    return resolved.with_name(resolved.name + LOCK_SUFFIX)


class LockOptions(BaseModel):
    """How hard to try when acquiring a lock."""

    stale_check: bool = Field(default=True, description="Reclaim locks whose owner process is gone")
    retries: int = Field(default=0, ge=0, description="Extra attempts after the first one fails")
    retry_interval_ms: int = Field(
        default=DEFAULT_LOCK_RETRY_INTERVAL_MS, ge=0, description="Delay between attempts in milliseconds",
    )

    @property
    def retry_interval_seconds(self) -> float:
        """Get the retry interval in seconds."""
        return self.retry_interval_ms / 1000


class LockRecord(BaseModel):
    """A lock file and the pid written into it."""

    model_config = ConfigDict(frozen=True)

    path: Path = Field(..., description="The resource being locked")
    owner_pid: int = Field(..., gt=0, description="Process id recorded in the lock file")

    @property
    def lock_file(self) -> Path:
        """Get the marker file path."""
        return lock_file_path(self.path)


class LockInfo(BaseModel):
    """Non-destructive snapshot of a lock's state."""

    locked: bool = Field(default=False)
    pid: int | None = Field(default=None, description="Owner pid, when the lock is held")
