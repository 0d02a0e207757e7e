"""Cooperative cancellation tokens.

A token is triggered at most once; the first reason wins. Long-running
operations watch a token at every suspension point, and two independent
tokens can be merged so that whichever fires first cancels the merged one.
"""

import asyncio
import contextlib
import functools
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from agent_supervisor.errors import Aborted, SupervisorError

logger = logging.getLogger(__name__)

T = TypeVar("T")
CancelCallback = Callable[[Any], Any]


def _discard_result(task: "asyncio.Future[Any]") -> None:
    # Abandoned work: retrieve the outcome so asyncio does not report it
    if not task.cancelled():
        task.exception()


class CancellationToken:
    """Single-shot cancellation signal with a carried reason."""

    def __init__(self, name: str = "cancel", *, propagate_errors: bool = False):
        self.name = name
        self.propagate_errors = propagate_errors
        self._event = asyncio.Event()
        self._reason: Any = None
        self._callbacks: list[CancelCallback] = []
        self._unlinks: list[Callable[[], None]] = []

    def __repr__(self) -> str:
        state = f"cancelled reason={self._reason!r}" if self.cancelled else "active"
        return f"<CancellationToken {self.name} {state}>"

    @property
    def cancelled(self) -> bool:
        """Check if the token has fired."""
        return self._event.is_set()

    @property
    def reason(self) -> Any:
        """Get the reason the token fired with (None while active)."""
        return self._reason

    def cancel(self, reason: Any = None) -> bool:
        """Fire the token. Returns False if it had already fired."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(reason)
            except Exception:
                logger.exception("Cancellation callback failed for %s", self.name)
        self._detach()
        return True

    def add_callback(self, callback: CancelCallback) -> Callable[[], None]:
        """Run ``callback(reason)`` when the token fires.

        Runs immediately if the token already fired. Returns a function that
        unregisters the callback.
        """
        if self.cancelled:
            callback(self._reason)
            return lambda: None

        self._callbacks.append(callback)

        def remove() -> None:
            with contextlib.suppress(ValueError):
                self._callbacks.remove(callback)

        return remove

    def exception(self) -> SupervisorError:
        """Get the exception that represents this token's reason.

        Tokens created with ``propagate_errors`` hand back a supervisor error
        carried as the reason; every other reason is reported as a caller abort.
        """
        if self.propagate_errors and isinstance(self._reason, SupervisorError):
            return self._reason
        return Aborted(self._reason)

    def raise_if_cancelled(self) -> None:
        """Raise the token's exception if it has fired."""
        if self.cancelled:
            raise self.exception()

    async def wait(self) -> Any:
        """Wait until the token fires and return its reason."""
        await self._event.wait()
        return self._reason

    async def race(self, awaitable: Awaitable[T], *, abandon: bool = True) -> T:
        """Await ``awaitable`` unless the token fires first.

        When the token wins, the work is either abandoned (left running with
        its result ignored) or cancelled, and the token's exception is raised.
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if self.cancelled:
            if abandon:
                work.add_done_callback(_discard_result)
            else:
                work.cancel()
            raise self.exception()
        return work.result()

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds``, waking early with the token's exception."""
        await self.race(asyncio.sleep(max(0.0, seconds)), abandon=False)

    @classmethod
    def merge(cls, *tokens: "CancellationToken | None", name: str = "merged") -> "CancellationToken":
        """Create a token that fires with the reason of whichever input fires first.

        The merged token reports that reason the way its source token would.
        """
        merged = cls(name)
        for token in tokens:
            if token is None:
                continue
            merged._unlinks.append(token.add_callback(functools.partial(merged._follow, token)))
            if merged.cancelled:
                break
        return merged

    def _follow(self, source: "CancellationToken", reason: Any) -> None:
        if not self.cancelled:
            self.propagate_errors = source.propagate_errors
            self.cancel(reason)

    def close(self) -> None:
        """Detach a merged token from its inputs without firing it."""
        self._detach()

    def _detach(self) -> None:
        unlinks, self._unlinks = self._unlinks, []
        for unlink in unlinks:
            unlink()
