"""Cross-process advisory locks backed by pid files.

A lock on ``path`` is the file ``<path>.lock`` holding the owner's pid as
decimal text. Creation is atomic: the pid is written to a private temporary
file which is then hard-linked into place, so other processes either see no
lock or a complete one. A lock whose owner is no longer alive is stale and
may be reclaimed by the next acquirer; removal of a stale lock is serialized
through a kernel lock on ``<path>.lock.reclaim``.
"""

import contextlib
import logging
import os
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from agent_supervisor.constants import RECLAIM_GUARD_SUFFIX
from agent_supervisor.errors import Locked, NotAcquired
from agent_supervisor.models import LockInfo, LockOptions, LockRecord, lock_file_path
from agent_supervisor.utils.cancellation import CancellationToken
from agent_supervisor.utils.process import IsAlive, pid_alive

logger = logging.getLogger(__name__)


def read_lock_pid(lock_file: Path) -> int:
    """Read the owner pid stored in ``lock_file``.

    Raises:
        FileNotFoundError: If the lock file does not exist
        ValueError: If the content is not a positive decimal pid
    """
    return _parse_pid(lock_file, _read_lock_text(lock_file))


def _read_lock_text(lock_file: Path) -> str:
    return lock_file.read_text(encoding="utf-8")


def _parse_pid(lock_file: Path, content: str) -> int:
    text = content.strip()
    if not text.isdigit():
        raise ValueError(f"Corrupt lock file {lock_file}: {text[:32]!r}")
    pid = int(text)
    if pid <= 0:
        raise ValueError(f"Corrupt lock file {lock_file}: pid {pid}")
    return pid


if os.name == "nt":
    import msvcrt

    def _try_lock_fd(fd: int) -> bool:
        try:
            msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
        except OSError:
            return False
        return True

    def _unlock_fd(fd: int) -> None:
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)

else:
    import fcntl

    def _try_lock_fd(fd: int) -> bool:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        return True

    def _unlock_fd(fd: int) -> None:
        fcntl.flock(fd, fcntl.LOCK_UN)


@contextlib.contextmanager
def _reclaim_guard(lock_file: Path) -> Iterator[bool]:
    """Hold the guard that serializes stale lock removal.

    Yields False when another process is reclaiming right now. The kernel
    drops the guard when its holder dies, so the guard itself is never stale.
    The guard file is never deleted.
    """
    guard = lock_file.with_name(lock_file.name + RECLAIM_GUARD_SUFFIX)
    with open(guard, "a+b") as f:
        f.seek(0)
        if not _try_lock_fd(f.fileno()):
            yield False
            return
        try:
            yield True
        finally:
            _unlock_fd(f.fileno())


class LockHandle:
    """Release handle for an acquired lock.

    Calling the handle releases the lock. It can also be used as a sync or
    async context manager; releasing twice is a no-op.
    """

    def __init__(self, manager: "LockManager", record: LockRecord):
        self._manager = manager
        self.record = record
        self._released = False

    @property
    def path(self) -> Path:
        """Get the locked resource path."""
        return self.record.path

    @property
    def released(self) -> bool:
        """Check if the lock was released through this handle."""
        return self._released

    def release(self) -> None:
        """Release the lock."""
        if self._released:
            return
        self._manager.release(self.record.path)
        self._released = True

    __call__ = release

    def __enter__(self) -> "LockHandle":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.release()

    async def __aenter__(self) -> "LockHandle":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "released" if self._released else "held"
        return f"<LockHandle {self.record.lock_file} pid={self.record.owner_pid} {state}>"


class LockManager:
    """Acquire and release pid-file locks on behalf of one process."""

    def __init__(self, pid: int | None = None, is_alive: IsAlive = pid_alive):
        self.pid = os.getpid() if pid is None else pid
        self.is_alive = is_alive

    async def acquire(
        self,
        path: Path | str,
        options: LockOptions | None = None,
        cancel: CancellationToken | None = None,
    ) -> LockHandle:
        """Acquire the lock on ``path``.

        Args:
            path: Resource to lock; the marker lives at ``<path>.lock``
            options: Stale check and retry behaviour
            cancel: Stops retrying when it fires

        Returns:
            A handle that releases the lock

        Raises:
            Locked: If a live process still holds the lock after all retries
            Aborted: If ``cancel`` fires before the lock is acquired
        """
        options = options or LockOptions()
        cancel = cancel or CancellationToken("lock")
        resource = Path(path).expanduser().resolve()
        lock_file = lock_file_path(resource)

        attempt = 0
        while True:
            cancel.raise_if_cancelled()
            if self._try_acquire(lock_file, stale_check=options.stale_check):
                logger.debug("Acquired %s for pid %d", lock_file, self.pid)
                return LockHandle(self, LockRecord(path=resource, owner_pid=self.pid))

            if attempt >= options.retries:
                break
            attempt += 1
            logger.debug("Lock %s busy, retry %d/%d", lock_file, attempt, options.retries)
            await cancel.sleep(options.retry_interval_seconds)

        raise Locked(resource, self._holder(lock_file))

    def release(self, path: Path | str) -> None:
        """Release the lock on ``path`` held by this process.

        Raises:
            NotAcquired: If the lock is missing, unreadable or owned by another pid
        """
        resource = Path(path).expanduser().resolve()
        lock_file = lock_file_path(resource)

        try:
            owner = read_lock_pid(lock_file)
        except FileNotFoundError:
            raise NotAcquired(resource, "Lock is not acquired") from None
        except ValueError:
            raise NotAcquired(resource, "Lock file is corrupt") from None

        if owner != self.pid:
            raise NotAcquired(resource, f"Lock is owned by PID {owner}, not {self.pid}")

        try:
            lock_file.unlink()
        except FileNotFoundError:
            raise NotAcquired(resource, "Lock was removed before release") from None
        logger.debug("Released %s", lock_file)

    def is_held(self, path: Path | str) -> bool:
        """Check if ``path`` is locked by a live process. Never modifies the lock."""
        return self.get_lock_info(path).locked

    def get_lock_info(self, path: Path | str) -> LockInfo:
        """Get the lock state and owner of ``path``.

        Stale and corrupt locks report as not locked.
        """
        lock_file = lock_file_path(path)
        try:
            pid = read_lock_pid(lock_file)
        except (FileNotFoundError, ValueError):
            return LockInfo(locked=False)
        if pid != self.pid and not self.is_alive(pid):
            return LockInfo(locked=False, pid=pid)
        return LockInfo(locked=True, pid=pid)

    def _try_acquire(self, lock_file: Path, stale_check: bool) -> bool:
        """Make one acquisition attempt, reclaiming a stale lock at most once."""
        lock_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._create(lock_file)
            return True
        except FileExistsError:
            if not stale_check:
                return False

        try:
            content = _read_lock_text(lock_file)
        except FileNotFoundError:
            # Released between our create and read
            return self._try_acquire(lock_file, stale_check=False)

        try:
            owner = _parse_pid(lock_file, content)
        except ValueError:
            logger.warning("Removing corrupt lock file %s", lock_file)
        else:
            if owner == self.pid or self.is_alive(owner):
                return False
            logger.info("Reclaiming stale lock %s from dead pid %d", lock_file, owner)

        if not self._remove_if_unchanged(lock_file, content):
            return False
        return self._try_acquire(lock_file, stale_check=False)

    def _remove_if_unchanged(self, lock_file: Path, expected: str) -> bool:
        """Delete ``lock_file`` only if it still holds ``expected``.

        Removal happens while holding the kernel lock on a guard file beside
        the lock, so a lock another process created after our check is never
        deleted.
        """
        with _reclaim_guard(lock_file) as guarded:
            if not guarded:
                return False
            try:
                if _read_lock_text(lock_file) != expected:
                    logger.debug("Lock %s changed hands during reclaim", lock_file)
                    return False
            except FileNotFoundError:
                return True
            lock_file.unlink(missing_ok=True)
            return True

    def _create(self, lock_file: Path) -> None:
        """Atomically create ``lock_file`` containing our pid.

        Raises:
            FileExistsError: If the lock file already exists
        """
        fd, tmp_name = tempfile.mkstemp(prefix=f".{lock_file.name}.", suffix=".tmp", dir=lock_file.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(str(self.pid))
            os.link(tmp_name, lock_file)
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)

    def _holder(self, lock_file: Path) -> int | None:
        try:
            return read_lock_pid(lock_file)
        except (FileNotFoundError, ValueError):
            return None
