"""Durable devhook identity for a project directory.

The identifier is a random UUID stored once under the project's data
directory and reused by every later run. A separate lock makes sure only one
supervisor serves the devhook of a directory at a time.
"""

import contextlib
import logging
import os
import uuid
from pathlib import Path
from typing import Any

from agent_supervisor.constants import DATA_DIR_NAME, DEVHOOK_ID_FILE, DEVHOOK_LOCK_NAME, DEVHOOK_PID_FILE
from agent_supervisor.core.lockfile import LockHandle, LockManager
from agent_supervisor.errors import Locked
from agent_supervisor.models import LockOptions

logger = logging.getLogger(__name__)


def get_devhook_path(directory: Path | str) -> Path:
    """Get the path of the devhook identifier file for ``directory``."""
    return Path(directory) / DATA_DIR_NAME / DEVHOOK_ID_FILE


def has_devhook(directory: Path | str) -> bool:
    """Check if a devhook identifier exists for ``directory``."""
    return get_devhook_path(directory).exists()


def get_devhook_id(directory: Path | str) -> str | None:
    """Get the devhook identifier for ``directory``, or None if none was created."""
    path = get_devhook_path(directory)
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def create_devhook_id(directory: Path | str) -> str:
    """Get the devhook identifier for ``directory``, creating it on first use."""
    path = get_devhook_path(directory)
    path.parent.mkdir(parents=True, exist_ok=True)

    existing = get_devhook_id(directory)
    if existing is not None:
        return existing

    devhook_id = str(uuid.uuid4())
    path.write_text(devhook_id, encoding="utf-8")
    logger.info("Created devhook id %s in %s", devhook_id, path)
    return devhook_id


class DevhookLock:
    """Exclusive claim on serving the devhook of a project directory."""

    def __init__(self, directory: Path | str, lock_manager: LockManager | None = None):
        self.directory = Path(directory).expanduser().resolve()
        self.lock_manager = lock_manager or LockManager()
        self._handle: LockHandle | None = None

    @property
    def lock_path(self) -> Path:
        """Get the locked resource path."""
        return self.directory / DATA_DIR_NAME / DEVHOOK_LOCK_NAME

    @property
    def pid_path(self) -> Path:
        """Get the file naming the process serving the devhook."""
        return self.directory / DATA_DIR_NAME / DEVHOOK_PID_FILE

    @property
    def held(self) -> bool:
        """Check if this instance holds the lock."""
        return self._handle is not None

    def holder_pid(self) -> int | None:
        """Get the pid recorded by the process serving the devhook, if readable."""
        try:
            text = self.pid_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return int(text) if text.isdigit() else None

    async def acquire(self) -> "DevhookLock":
        """Acquire the devhook lock and record our pid.

        Raises:
            Locked: If another live process is serving this directory's devhook
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._handle = await self.lock_manager.acquire(self.lock_path, LockOptions(stale_check=True, retries=0))
        except Locked as e:
            pid = self.holder_pid() or e.pid
            message = f"Another supervisor is already serving the devhook in {self.directory}"
            if pid is not None:
                message += f" (PID: {pid})"
            raise Locked(self.lock_path, pid, message) from None

        self.pid_path.write_text(str(self.lock_manager.pid), encoding="utf-8")
        return self

    def release(self) -> None:
        """Remove the pid file and release the lock."""
        if self._handle is None:
            return
        with contextlib.suppress(FileNotFoundError):
            self.pid_path.unlink()
        handle, self._handle = self._handle, None
        handle.release()

    async def __aenter__(self) -> "DevhookLock":
        return await self.acquire()

    async def __aexit__(self, *exc_info: Any) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"<DevhookLock {self.directory} held={self.held} pid={os.getpid()}>"
