"""Child process launching and output streaming."""

import asyncio
import codecs
import contextlib
import logging
import os
import signal
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

from agent_supervisor.constants import (
    DEFAULT_TERMINATE_GRACE_SECONDS,
    STREAM_CHUNK_SIZE,
    STREAM_DRAIN_TIMEOUT_SECONDS,
)
from agent_supervisor.errors import ProcessError
from agent_supervisor.models import ExitState
from agent_supervisor.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], Any]
ExitCallback = Callable[[int | None, str | None], Any]
StartupExitCallback = Callable[[ExitState], Any]

_USE_PROCESS_GROUPS = os.name == "posix"


class _ExitNotifyingProtocol(asyncio.subprocess.SubprocessStreamProtocol):
    """Stream protocol that reports the exit code as soon as the child is reaped.

    ``Process.wait()`` also waits for the pipes to close, which never happens
    while a grandchild keeps them open.
    """

    def __init__(self, limit: int, loop: asyncio.AbstractEventLoop):
        super().__init__(limit=limit, loop=loop)
        self.exit_code: "asyncio.Future[int]" = loop.create_future()
        self._exit_transport: asyncio.SubprocessTransport | None = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._exit_transport = transport
        super().connection_made(transport)

    def process_exited(self) -> None:
        super().process_exited()
        if not self.exit_code.done():
            self.exit_code.set_result(self._exit_transport.get_returncode())


class ProcessHandle:
    """A running (or finished) child process and its observers."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        command: str,
        args: Sequence[str],
        env: Mapping[str, str],
        *,
        exit_code: "asyncio.Future[int] | None" = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
        on_exit: ExitCallback | None = None,
        on_startup_exit: StartupExitCallback | None = None,
    ):
        self._process = process
        self._exit_code = exit_code
        self.command = command
        self.args = list(args)
        self.env = dict(env)
        self.on_stdout = on_stdout
        self.on_stderr = on_stderr
        self.on_exit = on_exit
        self.on_startup_exit = on_startup_exit
        self._exit_state = ExitState()
        self._exited = asyncio.Event()
        self._running = False
        self._watcher: asyncio.Task | None = None
        self._remove_cancel: Callable[[], None] | None = None
        self._abort_reason: str | None = None

    @property
    def pid(self) -> int:
        """Get the child's process id."""
        return self._process.pid

    @property
    def exit_state(self) -> ExitState:
        """Get how the process ended, or a running state."""
        return self._exit_state

    @property
    def exited(self) -> bool:
        """Check if the exit watcher has recorded the exit."""
        return self._exited.is_set()

    @property
    def running(self) -> bool:
        """Check if startup completed and exit notifications are active."""
        return self._running

    def mark_running(self) -> None:
        """Route the eventual exit to ``on_exit`` instead of ``on_startup_exit``."""
        self._running = True

    def kill(self) -> None:
        """Kill the child and its process group, ignoring processes already gone."""
        if _USE_PROCESS_GROUPS:
            self._signal_group(signal.SIGKILL)
        elif self._process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self._process.kill()

    def _signal_group(self, sig: int) -> None:
        # The child leads its own process group, so grandchildren get the signal too
        try:
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug("Signal %s to process group %s failed: %s", sig, self.pid, e)

    async def terminate(self, grace_seconds: float = DEFAULT_TERMINATE_GRACE_SECONDS) -> ExitState:
        """Terminate the child and wait until its exit has been recorded.

        Sends SIGTERM to the process group, waits up to ``grace_seconds``,
        then sends SIGKILL. Group members left behind by a child that already
        exited are killed as well.
        """
        if self._process.returncode is None:
            if _USE_PROCESS_GROUPS:
                self._signal_group(signal.SIGTERM)
            else:
                with contextlib.suppress(ProcessLookupError):
                    self._process.terminate()
            try:
                await asyncio.wait_for(self._exited.wait(), timeout=grace_seconds)
            except asyncio.TimeoutError:
                logger.warning("Process %s ignored SIGTERM for %.1fs, killing", self.pid, grace_seconds)
        self.kill()
        await self._exited.wait()
        return self._exit_state

    async def wait(self, cancel: CancellationToken | None = None) -> ExitState:
        """Wait for the process to exit.

        Raises:
            Aborted: If ``cancel`` fires first
        """
        if cancel is None:
            await self._exited.wait()
        else:
            await cancel.race(self._exited.wait(), abandon=False)
        return self._exit_state

    def _watch(self, cancel: CancellationToken | None) -> None:
        if cancel is not None:
            self._remove_cancel = cancel.add_callback(self._abort)
        self._watcher = asyncio.get_running_loop().create_task(self._watch_exit())

    def _abort(self, reason: Any) -> None:
        if self._process.returncode is None:
            self._abort_reason = str(reason)
        self.kill()

    async def _watch_exit(self) -> None:
        pumps = [
            asyncio.ensure_future(_pump(self._process.stdout, self.on_stdout)),
            asyncio.ensure_future(_pump(self._process.stderr, self.on_stderr)),
        ]
        if self._exit_code is not None:
            returncode = await self._exit_code
        else:
            returncode = await self._process.wait()

        # Deliver buffered output before the exit; give up on pipes a grandchild still holds
        _, pending = await asyncio.wait(pumps, timeout=STREAM_DRAIN_TIMEOUT_SECONDS)
        if pending:
            logger.debug("Output of pid %s still open after exit, dropping it", self.pid)
            for pump in pending:
                pump.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        if self._remove_cancel is not None:
            self._remove_cancel()
            self._remove_cancel = None

        exit_state = ExitState.from_returncode(returncode)
        if self._abort_reason is not None:
            exit_state = exit_state.as_aborted(self._abort_reason)
        self._exit_state = exit_state
        self._exited.set()
        logger.debug("Process %s exited: %s", self.pid, self._exit_state)

        try:
            if self._running:
                if self.on_exit is not None:
                    self.on_exit(self._exit_state.code, self._exit_state.signal)
            elif self.on_startup_exit is not None:
                self.on_startup_exit(self._exit_state)
        except Exception:
            logger.exception("Exit observer failed for pid %s", self.pid)

    def __repr__(self) -> str:
        return f"<ProcessHandle pid={self.pid} {self.command!r} {self._exit_state.status.value}>"


async def _pump(stream: asyncio.StreamReader | None, callback: OutputCallback | None) -> None:
    """Forward decoded chunks from ``stream`` to ``callback`` until EOF."""
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(STREAM_CHUNK_SIZE)
        text = decoder.decode(chunk, final=not chunk)
        if text and callback is not None:
            try:
                callback(text)
            except Exception:
                logger.exception("Output observer failed")
        if not chunk:
            return


class ProcessLauncher:
    """Start child processes with piped output."""

    async def start(
        self,
        command: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        *,
        cwd: Path | str | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
        on_exit: ExitCallback | None = None,
        on_startup_exit: StartupExitCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> ProcessHandle:
        """Start ``command`` with ``args``.

        Args:
            command: Executable name or path
            args: Arguments passed to the executable
            env: Full child environment; defaults to ours
            cwd: Working directory for the child
            on_stdout: Receives decoded stdout text in order
            on_stderr: Receives decoded stderr text in order
            on_exit: Receives ``(code, signal)`` once, after ``mark_running``
            on_startup_exit: Receives the exit state if the process ends first
            cancel: Kills the child when it fires

        Returns:
            Handle of the started process

        Raises:
            ProcessError: If the OS could not start the process
            Aborted: If ``cancel`` had already fired
        """
        if cancel is not None:
            cancel.raise_if_cancelled()

        env = dict(os.environ if env is None else env)
        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.subprocess_exec(
                lambda: _ExitNotifyingProtocol(limit=STREAM_CHUNK_SIZE, loop=loop),
                command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=str(cwd) if cwd is not None else None,
                start_new_session=_USE_PROCESS_GROUPS,
            )
        except OSError as e:
            raise ProcessError(f"Failed to start {command!r}: {e.strerror or e}") from e

        process = asyncio.subprocess.Process(transport, protocol, loop)
        logger.info("Started %s (pid %s)", command, process.pid)
        handle = ProcessHandle(
            process,
            command,
            args,
            env,
            exit_code=protocol.exit_code,
            on_stdout=on_stdout,
            on_stderr=on_stderr,
            on_exit=on_exit,
            on_startup_exit=on_startup_exit,
        )
        handle._watch(cancel)
        return handle
