"""Launch an agent server, wait for it to become healthy and supervise it.

One ``launch`` call drives one lifecycle::

    idle -> launching -> awaiting_health -> ready -> running -> exited | aborted

Startup either yields a fully running ``AgentHandle`` or raises exactly one
error (``Locked``, ``ProcessError``, ``HealthTimeout`` or ``Aborted``) after
the child has been terminated and the lock released.
"""

import asyncio
import contextlib
import logging
import os
from collections.abc import Callable
from typing import Any

from agent_supervisor.client import AgentClient
from agent_supervisor.config.settings import SupervisorSettings
from agent_supervisor.constants import HOST_ENV, PORT_ENV
from agent_supervisor.core.health import HealthProbe
from agent_supervisor.core.launcher import ProcessHandle, ProcessLauncher
from agent_supervisor.core.lockfile import LockHandle, LockManager
from agent_supervisor.errors import Aborted, HealthTimeout, NotAcquired, ProcessError, SupervisorError
from agent_supervisor.models import AgentEndpoint, ExitState, HealthState, LaunchSpec, Lifecycle, LifecycleState
from agent_supervisor.utils.cancellation import CancellationToken
from agent_supervisor.utils.helpers import format_exit
from agent_supervisor.utils.ports import get_free_port
from agent_supervisor.utils.task_queue import SequentialTaskQueue

logger = logging.getLogger(__name__)

# Stderr kept from the startup phase to explain an early exit
STARTUP_STDERR_LIMIT = 4096

OutputCallback = Callable[[str], Any]
ExitCallback = Callable[[int | None, str | None], Any]


class AgentHandle:
    """A running agent: its client, endpoint, process and lifecycle."""

    def __init__(
        self,
        *,
        client: AgentClient,
        endpoint: AgentEndpoint,
        process: ProcessHandle,
        lifecycle: Lifecycle,
        health: HealthState,
        queue: SequentialTaskQueue,
        lock: LockHandle | None = None,
        grace_seconds: float,
    ):
        self.client = client
        self.endpoint = endpoint
        self.process = process
        self.lifecycle = lifecycle
        self.health = health
        self.lock = lock
        self._queue = queue
        self._grace_seconds = grace_seconds
        self._close_task: asyncio.Task | None = None

    @property
    def pid(self) -> int:
        """Get the agent process id."""
        return self.process.pid

    def dispose(self) -> None:
        """Kill the agent and release its lock without waiting."""
        self.process.kill()
        _release_quietly(self.lock)
        if not self.client.closed:
            with contextlib.suppress(RuntimeError):
                self._close_task = asyncio.get_running_loop().create_task(self.client.aclose())

    async def aclose(self) -> ExitState:
        """Terminate the agent and wait until every callback has been delivered."""
        exit_state = await self.process.terminate(self._grace_seconds)
        await self._queue.flush()
        await self.client.aclose()
        _release_quietly(self.lock)
        return exit_state

    async def wait(self, cancel: CancellationToken | None = None) -> ExitState:
        """Wait for the agent to exit and its callbacks to be delivered.

        Raises:
            Aborted: If ``cancel`` fires first
        """
        exit_state = await self.process.wait(cancel)
        await self._queue.flush()
        return exit_state

    async def __aenter__(self) -> "AgentHandle":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        return f"<AgentHandle {self.endpoint.base_url} pid={self.pid} {self.lifecycle.state.value}>"


def _release_quietly(lock: LockHandle | None) -> None:
    if lock is None or lock.released:
        return
    try:
        lock.release()
    except NotAcquired as e:
        logger.warning("Could not release %s: %s", lock.path, e)


class LifecycleCoordinator:
    """Run launch requests against a lock manager, launcher and health probe."""

    def __init__(
        self,
        settings: SupervisorSettings | None = None,
        lock_manager: LockManager | None = None,
        launcher: ProcessLauncher | None = None,
        probe: HealthProbe | None = None,
    ):
        self.settings = settings or SupervisorSettings()
        self.lock_manager = lock_manager or LockManager()
        self.launcher = launcher or ProcessLauncher()
        self.probe = probe or HealthProbe.from_settings(self.settings)
        self.queue = SequentialTaskQueue("agent-events")

    def compose_env(self, spec: LaunchSpec, host: str, port: int) -> dict[str, str]:
        """Build the child environment: caller env overlaid with PORT, HOST and the API URL."""
        env = dict(os.environ if spec.env is None else spec.env)
        env[PORT_ENV] = str(port)
        env[HOST_ENV] = host
        api_url = spec.api_server_url or self.settings.api_server_url
        if api_url:
            env[self.settings.api_server_url_env] = api_url
        return env

    def resolve_endpoint(self, spec: LaunchSpec) -> AgentEndpoint:
        """Pick the host and port for the agent, allocating a port if none was given."""
        env = spec.env or {}
        host = env.get(HOST_ENV) or self.settings.host
        if env.get(PORT_ENV):
            port = int(env[PORT_ENV])
        else:
            port = get_free_port(host)
        return AgentEndpoint(host=host, port=port)

    async def launch(
        self,
        spec: LaunchSpec,
        *,
        cancel: CancellationToken | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
        on_exit: ExitCallback | None = None,
    ) -> AgentHandle:
        """Launch an agent and wait until it answers its health check.

        Args:
            spec: What to run and which resource to lock
            cancel: Caller token; firing it kills the agent for its whole lifetime
            on_stdout: Receives agent stdout text, in order
            on_stderr: Receives agent stderr text, in order
            on_exit: Receives ``(code, signal)`` once if the agent exits after startup

        Returns:
            Handle of the running agent

        Raises:
            Locked: If another live supervisor holds ``spec.lock_path``
            ProcessError: If the agent could not start or exited during startup
            HealthTimeout: If the agent never became healthy
            Aborted: If ``cancel`` fired before the agent was ready
        """
        lifecycle = Lifecycle()
        if cancel is not None:
            cancel.raise_if_cancelled()

        lock: LockHandle | None = None
        if spec.lock_path is not None:
            try:
                lock = await self.lock_manager.acquire(spec.lock_path, self.settings.lock_options, cancel)
            except BaseException as e:
                await self._abandon_startup(lifecycle, e, None, None, None)
                raise

        startup = CancellationToken("startup", propagate_errors=True)
        watched = CancellationToken.merge(startup, cancel, name="startup-or-caller")
        startup_stderr: list[str] = []
        process: ProcessHandle | None = None
        client: AgentClient | None = None

        def forward_stdout(text: str) -> None:
            if on_stdout is not None:
                self.queue.submit(on_stdout, text)

        def forward_stderr(text: str) -> None:
            if not startup.cancelled and sum(map(len, startup_stderr)) < STARTUP_STDERR_LIMIT:
                startup_stderr.append(text)
            if on_stderr is not None:
                self.queue.submit(on_stderr, text)

        def exited(code: int | None, signal: str | None) -> None:
            state = LifecycleState.ABORTED if cancel is not None and cancel.cancelled else LifecycleState.EXITED
            lifecycle.transition(state, format_exit(code, signal))
            _release_quietly(lock)
            logger.info("Agent exited with %s", format_exit(code, signal))
            if on_exit is not None:
                self.queue.submit(on_exit, code, signal)

        def exited_during_startup(exit_state: ExitState) -> None:
            detail = "".join(startup_stderr).strip()
            message = f"Agent exited during startup ({format_exit(exit_state.code, exit_state.signal)})"
            if detail:
                message += f": {detail[-STARTUP_STDERR_LIMIT:]}"
            startup.cancel(ProcessError(message, exit_state=exit_state))

        try:
            endpoint = self.resolve_endpoint(spec)
            env = self.compose_env(spec, endpoint.host, endpoint.port)
            lifecycle.transition(LifecycleState.LAUNCHING, f"{spec.full_command} on {endpoint.base_url}")

            process = await self.launcher.start(
                spec.command,
                spec.args,
                env,
                cwd=spec.cwd,
                on_stdout=forward_stdout,
                on_stderr=forward_stderr,
                on_exit=exited,
                on_startup_exit=exited_during_startup,
                cancel=cancel,
            )
            lifecycle.transition(LifecycleState.AWAITING_HEALTH)

            client = AgentClient(
                endpoint.base_url,
                timeout_seconds=self.settings.health_request_timeout_seconds,
                health_path=self.settings.health_path,
            )
            health = await self.probe.wait_until_ready(client, watched)
            # The child may have exited while the last health call was in flight
            watched.raise_if_cancelled()
            lifecycle.transition(LifecycleState.READY, f"healthy after {health.attempts} attempts")
        except BaseException as e:
            await self._abandon_startup(lifecycle, e, process, client, lock)
            raise
        finally:
            watched.close()

        process.mark_running()
        startup.cancel("ready")
        lifecycle.transition(LifecycleState.RUNNING)
        logger.info("Agent ready at %s (pid %s)", endpoint.base_url, process.pid)

        return AgentHandle(
            client=client,
            endpoint=endpoint,
            process=process,
            lifecycle=lifecycle,
            health=health,
            queue=self.queue,
            lock=lock,
            grace_seconds=self.settings.terminate_grace_seconds,
        )

    async def _abandon_startup(
        self,
        lifecycle: Lifecycle,
        error: BaseException,
        process: ProcessHandle | None,
        client: AgentClient | None,
        lock: LockHandle | None,
    ) -> None:
        """Undo a failed startup: stop the child, close the client, release the lock."""
        if isinstance(error, HealthTimeout):
            state = LifecycleState.TIMED_OUT
        elif isinstance(error, (Aborted, asyncio.CancelledError)):
            state = LifecycleState.ABORTED
        else:
            state = LifecycleState.FAILED_STARTUP
        if lifecycle.can_transition(state):
            lifecycle.transition(state, str(error) or type(error).__name__)

        if process is not None:
            await process.terminate(self.settings.terminate_grace_seconds)
        if client is not None:
            await client.aclose()
        _release_quietly(lock)
        await self.queue.flush()

        if isinstance(error, SupervisorError):
            logger.info("Agent startup %s: %s", state.value, error)
        else:
            logger.debug("Agent startup interrupted", exc_info=error)
