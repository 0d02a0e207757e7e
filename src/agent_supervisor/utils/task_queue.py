"""Per-owner sequential task queue.

Each queue runs its callbacks one at a time, in submission order, on the
running event loop. Owners create their own queue; there is no process-wide
instance.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

from rich.console import Console

logger = logging.getLogger(__name__)
console = Console(stderr=True)


class SequentialTaskQueue:
    """Serialize sync or async callbacks without blocking the submitter."""

    def __init__(self, name: str = "tasks"):
        self.name = name
        self._tail: asyncio.Task | None = None
        self._closed = False
        self.failures = 0

    @property
    def closed(self) -> bool:
        """Check if the queue stopped accepting work."""
        return self._closed

    def submit(self, fn: Callable[..., Any], *args: Any) -> asyncio.Task:
        """Schedule ``fn(*args)`` to run after everything submitted before it."""
        if self._closed:
            raise RuntimeError(f"Task queue '{self.name}' is closed")

        previous = self._tail
        task = asyncio.get_running_loop().create_task(self._run_after(previous, fn, args))
        self._tail = task
        return task

    async def _run_after(self, previous: asyncio.Task | None, fn: Callable[..., Any], args: tuple) -> None:
        if previous is not None:
            await asyncio.wait({previous})
        try:
            result = fn(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.failures += 1
            console.print(f"[yellow]Warning: {self.name} callback failed: {e}[/yellow]")
            logger.debug("Callback %r failed in queue %s", fn, self.name, exc_info=True)

    async def flush(self) -> None:
        """Wait until every submitted callback has run."""
        while self._tail is not None:
            tail = self._tail
            await asyncio.wait({tail})
            if tail is self._tail:
                return

    async def close(self) -> None:
        """Stop accepting work and drain what is queued."""
        self._closed = True
        await self.flush()
