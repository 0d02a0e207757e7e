"""Files and keyed JSON records shared between processes under locks."""

import asyncio
import contextlib
import json
import logging
import os
import re
import signal
import tempfile
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from agent_supervisor.constants import (
    DEFAULT_LOCK_RETRY_INTERVAL_MS,
    FILE_STORE_LOCK_RETRIES,
    STORE_FORCE_KILL_WAIT_MS,
    STORE_FORCE_LOCK_RETRIES,
    STORE_INDEX_NAME,
)
from agent_supervisor.core.lockfile import LockHandle, LockManager
from agent_supervisor.errors import Locked
from agent_supervisor.models import LockOptions, StoreEntry, StoreIndex

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def write_atomic(path: Path, contents: str) -> None:
    """Replace ``path`` with ``contents`` so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".tmp-", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(contents)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


class FileStore:
    """Read and write one file while holding its lock."""

    def __init__(self, path: Path | str, lock_manager: LockManager | None = None, options: LockOptions | None = None):
        self.path = Path(path).expanduser().resolve()
        self.lock_manager = lock_manager or LockManager()
        self.options = options or LockOptions(
            stale_check=True, retries=FILE_STORE_LOCK_RETRIES, retry_interval_ms=DEFAULT_LOCK_RETRY_INTERVAL_MS,
        )

    def _ensure_file(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.touch()

    async def read(self) -> str:
        """Read the file contents.

        Raises:
            Locked: If another process keeps the file locked past all retries
        """
        self._ensure_file()
        async with await self.lock_manager.acquire(self.path, self.options):
            return self.path.read_text(encoding="utf-8")

    async def write(self, contents: str) -> None:
        """Replace the file contents atomically.

        Raises:
            Locked: If another process keeps the file locked past all retries
        """
        self._ensure_file()
        async with await self.lock_manager.acquire(self.path, self.options):
            write_atomic(self.path, contents)

    def __repr__(self) -> str:
        return f"<FileStore {self.path}>"


def _store_lock_options(retries: int = FILE_STORE_LOCK_RETRIES) -> LockOptions:
    return LockOptions(stale_check=True, retries=retries, retry_interval_ms=DEFAULT_LOCK_RETRY_INTERVAL_MS)


def key_filename(key: str) -> str:
    """Map a store key to a safe ``<key>.json`` file name."""
    name = _UNSAFE_FILENAME.sub("_", key).strip()
    if not name.strip("."):
        name = name.replace(".", "_") or "_"
    return f"{name}.json"


class DiskStore:
    """Keyed JSON records in a directory, one locked file per key.

    ``index.json`` maps keys to record files and has its own lock, so several
    processes can share one store. Records are read freely; changing one
    requires holding its lock through ``lock``.

    Args:
        directory: Where the index and records live
        id_key: Field of every record that holds its key
        lock_manager: Lock manager acting for this process
    """

    def __init__(self, directory: Path | str, id_key: str = "id", lock_manager: LockManager | None = None):
        self.directory = Path(directory).expanduser().resolve()
        self.id_key = id_key
        self.lock_manager = lock_manager or LockManager()
        self.index_path = self.directory / STORE_INDEX_NAME
        self._index_guard = asyncio.Lock()
        self._held: dict[str, "LockedStoreEntry"] = {}

    async def get(self, key: str) -> dict[str, Any] | None:
        """Get the record stored under ``key``, or None."""
        return self._read_value(key)

    async def list(self) -> list[StoreEntry]:
        """List records with their lock state, most recently modified first."""
        if not self.directory.is_dir():
            return []

        entries = []
        for key, filename in self._read_index().ids.items():
            path = self.directory / filename
            try:
                mtime = path.stat().st_mtime
            except FileNotFoundError:
                continue
            info = self.lock_manager.get_lock_info(path)
            entries.append(StoreEntry(key=key, locked=info.locked, pid=info.pid, mtime=mtime))

        entries.sort(key=lambda entry: entry.mtime, reverse=True)
        return entries

    async def lock(self, key: str, force: bool = False) -> "LockedStoreEntry":
        """Lock the record under ``key``, creating an empty one if needed.

        Args:
            key: Record key
            force: Send SIGTERM to a live holder before trying

        Returns:
            The locked record

        Raises:
            Locked: If the key is already locked by this store, or another
                process keeps it locked past all retries
        """
        if key in self._held:
            raise Locked(self.directory / key_filename(key), self.lock_manager.pid,
                         f'Key "{key}" is already locked in this process')

        path = self._value_path(key)
        if path is None:
            path = await self._create_placeholder(key)

        if force:
            await self._evict_holder(path)

        retries = STORE_FORCE_LOCK_RETRIES if force else FILE_STORE_LOCK_RETRIES
        handle = await self.lock_manager.acquire(path, _store_lock_options(retries))
        entry = LockedStoreEntry(self, key, handle)
        self._held[key] = entry
        return entry

    def close(self) -> None:
        """Release every record this store still holds."""
        for entry in list(self._held.values()):
            entry.release()

    @contextlib.asynccontextmanager
    async def _locked_index(self) -> AsyncIterator[StoreIndex]:
        async with self._index_guard:
            self.directory.mkdir(parents=True, exist_ok=True)
            if not self.index_path.exists():
                write_atomic(self.index_path, StoreIndex().model_dump_json())
            async with await self.lock_manager.acquire(self.index_path, _store_lock_options()):
                yield self._read_index()

    def _read_index(self) -> StoreIndex:
        try:
            return StoreIndex.model_validate_json(self.index_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return StoreIndex()

    def _write_index(self, index: StoreIndex) -> None:
        write_atomic(self.index_path, index.model_dump_json(indent=2))

    def _value_path(self, key: str) -> Path | None:
        filename = self._read_index().ids.get(key)
        return None if filename is None else self.directory / filename

    def _read_value(self, key: str) -> dict[str, Any] | None:
        path = self._value_path(key)
        if path is None:
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None

    async def _write_value(self, key: str, value: dict[str, Any]) -> None:
        async with self._locked_index() as index:
            filename = index.ids.get(key) or key_filename(key)
            index.ids[key] = filename
            index.current = key
            # Record first, then the index pointing at it
            write_atomic(self.directory / filename, json.dumps(value, indent=2))
            self._write_index(index)

    async def _create_placeholder(self, key: str) -> Path:
        async with self._locked_index() as index:
            filename = index.ids.get(key)
            if filename is None:
                filename = key_filename(key)
                index.ids[key] = filename
                write_atomic(self.directory / filename, "{}")
                self._write_index(index)
            return self.directory / filename

    async def _delete_value(self, key: str) -> None:
        async with self._locked_index() as index:
            filename = index.ids.pop(key, None)
            if filename is None:
                return
            if index.current == key:
                index.current = None
            # Index first, so readers never find a key without its record
            self._write_index(index)
            (self.directory / filename).unlink(missing_ok=True)

    async def _evict_holder(self, path: Path) -> None:
        info = self.lock_manager.get_lock_info(path)
        if not info.locked or info.pid is None or info.pid == self.lock_manager.pid:
            return
        logger.info("Sending SIGTERM to pid %d holding %s", info.pid, path)
        try:
            os.kill(info.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        except OSError as e:
            logger.warning("Failed to kill process %d: %s", info.pid, e)
            return
        await asyncio.sleep(STORE_FORCE_KILL_WAIT_MS / 1000)

    def __repr__(self) -> str:
        return f"<DiskStore {self.directory} held={sorted(self._held)}>"


class LockedStoreEntry:
    """A disk store record held under its lock.

    Release it with ``release`` or by leaving an ``async with`` block.
    """

    def __init__(self, store: DiskStore, key: str, handle: LockHandle):
        self.store = store
        self.key = key
        self._handle = handle

    @property
    def released(self) -> bool:
        """Check if the record's lock was released."""
        return self._handle.released

    async def get(self) -> dict[str, Any]:
        """Get the record.

        Raises:
            KeyError: If the record does not exist
        """
        value = self.store._read_value(self.key)
        if value is None:
            raise KeyError(self.key)
        return value

    async def set(self, value: dict[str, Any]) -> None:
        """Replace the record.

        Raises:
            ValueError: If the record's id field does not match the locked key
        """
        record_id = value.get(self.store.id_key)
        if record_id is None or str(record_id) != self.key:
            raise ValueError(f"Record {self.store.id_key}={record_id!r} does not match locked key {self.key!r}")
        await self.store._write_value(self.key, value)

    async def update(self, changes: dict[str, Any]) -> None:
        """Merge ``changes`` into the existing record.

        Raises:
            KeyError: If there is no complete record to update
        """
        current = self.store._read_value(self.key)
        if current is None or self.store.id_key not in current:
            raise KeyError(self.key)
        await self.set({**current, **changes})

    async def delete(self) -> None:
        """Remove the record and its index entry. The lock stays held until release."""
        await self.store._delete_value(self.key)

    def release(self) -> None:
        """Release the record's lock."""
        self.store._held.pop(self.key, None)
        self._handle.release()

    async def __aenter__(self) -> "LockedStoreEntry":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "released" if self.released else "held"
        return f"<LockedStoreEntry {self.key!r} {state}>"
