"""Integration tests for launching and supervising a real agent server."""

import asyncio
import os
import time
from pathlib import Path

import pytest

from agent_supervisor.config import SupervisorSettings
from agent_supervisor.core.coordinator import LifecycleCoordinator
from agent_supervisor.core.health import HealthProbe
from agent_supervisor.core.launcher import ProcessLauncher
from agent_supervisor.core.lockfile import LockManager
from agent_supervisor.errors import Aborted, HealthTimeout, Locked, ProcessError
from agent_supervisor.models import LaunchSpec, LifecycleState
from agent_supervisor.utils.cancellation import CancellationToken


class RecordingLauncher(ProcessLauncher):
    """Launcher that keeps every handle it starts."""

    def __init__(self):
        self.handles = []

    async def start(self, *args, **kwargs):
        handle = await super().start(*args, **kwargs)
        self.handles.append(handle)
        return handle


class CountingProbe(HealthProbe):
    """Probe that counts how often polling started."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.runs = 0

    async def wait_until_ready(self, client, cancel=None):
        self.runs += 1
        return await super().wait_until_ready(client, cancel)


def agent_spec(fake_agent: list[str], *flags: str, **kwargs) -> LaunchSpec:
    return LaunchSpec(command=fake_agent[0], args=[fake_agent[1], *flags], **kwargs)


@pytest.mark.integration
class TestLaunch:
    """Test successful launches."""

    def test_launch_reaches_running(self, settings: SupervisorSettings, fake_agent: list[str]):
        """Test the agent becomes healthy and the handle's client can talk to it."""
        stdout: list[str] = []

        async def scenario():
            coordinator = LifecycleCoordinator(settings)
            handle = await coordinator.launch(agent_spec(fake_agent), on_stdout=stdout.append)
            try:
                capabilities = await handle.client.capabilities()
                await handle.client.health()
                return handle, capabilities
            finally:
                await handle.aclose()

        handle, capabilities = asyncio.run(scenario())

        assert capabilities["chat"] is True
        assert handle.endpoint.host == "127.0.0.1"
        assert handle.health.ready
        assert f"listening on 127.0.0.1:{handle.endpoint.port}" in "".join(stdout)
        states = [t.to_state for t in handle.lifecycle.history]
        assert states[:4] == [
            LifecycleState.LAUNCHING,
            LifecycleState.AWAITING_HEALTH,
            LifecycleState.READY,
            LifecycleState.RUNNING,
        ]

    def test_environment_injection(self, settings: SupervisorSettings, fake_agent: list[str]):
        """Test PORT, HOST and the API URL reach the child, over the caller's environment."""

        async def scenario():
            coordinator = LifecycleCoordinator(settings)
            spec = agent_spec(
                fake_agent,
                env={**os.environ, "HOST": "127.0.0.1", "AGENT_API_URL": "overridden"},
                api_server_url="http://api.local:4000",
            )
            handle = await coordinator.launch(spec)
            try:
                return handle, await handle.client.capabilities()
            finally:
                await handle.aclose()

        handle, capabilities = asyncio.run(scenario())

        assert capabilities["api_url"] == "http://api.local:4000"
        assert handle.process.env["PORT"] == str(handle.endpoint.port)
        assert handle.process.env["HOST"] == "127.0.0.1"

    def test_port_from_caller_env(self, settings: SupervisorSettings, fake_agent: list[str]):
        """Test a PORT given by the caller is used instead of allocating one."""
        from agent_supervisor.utils.ports import get_free_port

        port = get_free_port()

        async def scenario():
            coordinator = LifecycleCoordinator(settings)
            handle = await coordinator.launch(agent_spec(fake_agent, env={**os.environ, "PORT": str(port)}))
            await handle.aclose()
            return handle

        assert asyncio.run(scenario()).endpoint.port == port

    def test_becomes_healthy_after_failed_checks(self, settings: SupervisorSettings, fake_agent: list[str]):
        """Test an agent that answers 503 a few times is still accepted."""

        async def scenario():
            coordinator = LifecycleCoordinator(settings)
            handle = await coordinator.launch(agent_spec(fake_agent, "--unhealthy-for", "3"))
            await handle.aclose()
            return handle

        handle = asyncio.run(scenario())

        assert handle.health.attempts >= 4
        assert handle.health.ready


@pytest.mark.integration
class TestStartupFailures:
    """Test that startup failures surface as a single error with cleanup."""

    def test_invalid_command(self, settings: SupervisorSettings, temp_dir: Path):
        """Test an executable that cannot start fails before any health attempt."""
        probe = CountingProbe.from_settings(settings)
        lock_path = temp_dir / "agent"

        async def scenario():
            coordinator = LifecycleCoordinator(settings, probe=probe)
            await coordinator.launch(LaunchSpec(command=str(temp_dir / "missing-agent"), lock_path=lock_path))

        with pytest.raises(ProcessError):
            asyncio.run(scenario())

        assert probe.runs == 0
        assert not (temp_dir / "agent.lock").exists()

    def test_health_timeout_kills_child(self, settings: SupervisorSettings, fake_agent: list[str], temp_dir: Path):
        """Test a never-healthy agent times out after the ceiling and is terminated."""
        launcher = RecordingLauncher()
        probe = HealthProbe(base_delay_ms=10, max_attempts=5, backoff="fixed")
        lock_path = temp_dir / "agent"

        async def scenario():
            coordinator = LifecycleCoordinator(settings, launcher=launcher, probe=probe)
            await coordinator.launch(agent_spec(fake_agent, "--never-healthy", lock_path=lock_path))

        with pytest.raises(HealthTimeout) as exc_info:
            asyncio.run(scenario())

        assert exc_info.value.attempts == 5
        assert launcher.handles[0].exited
        assert not launcher.handles[0].exit_state.is_running
        assert not (temp_dir / "agent.lock").exists()

    def test_exit_during_startup(self, settings: SupervisorSettings, fake_agent: list[str]):
        """Test an agent that dies before readiness fails with ProcessError, not a timeout."""
        exits: list = []

        async def scenario():
            coordinator = LifecycleCoordinator(settings)
            await coordinator.launch(
                agent_spec(fake_agent, "--exit-at-start", "--exit-code", "2"),
                on_exit=lambda code, sig: exits.append(code),
            )

        with pytest.raises(ProcessError) as exc_info:
            asyncio.run(scenario())

        assert "code 2" in str(exc_info.value)
        assert "refused to start" in str(exc_info.value)
        assert exc_info.value.exit_state.code == 2
        assert exits == []

    def test_cancel_mid_probe_aborts(self, settings: SupervisorSettings, fake_agent: list[str]):
        """Test caller cancellation during polling resolves as Aborted, never HealthTimeout."""
        launcher = RecordingLauncher()
        probe = HealthProbe(base_delay_ms=50, max_attempts=1000, backoff="fixed")

        async def scenario():
            coordinator = LifecycleCoordinator(settings, launcher=launcher, probe=probe)
            cancel = CancellationToken("test")
            asyncio.get_running_loop().call_later(0.5, cancel.cancel, "user abort")
            started = time.monotonic()
            with pytest.raises(Aborted) as exc_info:
                await coordinator.launch(agent_spec(fake_agent, "--never-healthy"), cancel=cancel)
            return exc_info.value, time.monotonic() - started

        error, elapsed = asyncio.run(scenario())

        assert error.reason == "user abort"
        assert elapsed < 5
        assert launcher.handles[0].exited

    def test_already_cancelled(self, settings: SupervisorSettings, fake_agent: list[str]):
        """Test nothing is launched for an already cancelled caller."""
        launcher = RecordingLauncher()

        async def scenario():
            cancel = CancellationToken()
            cancel.cancel("no")
            await LifecycleCoordinator(settings, launcher=launcher).launch(agent_spec(fake_agent), cancel=cancel)

        with pytest.raises(Aborted):
            asyncio.run(scenario())

        assert launcher.handles == []


@pytest.mark.integration
class TestRunningAgent:
    """Test supervision after the agent is running."""

    def test_exit_after_running(self, settings: SupervisorSettings, fake_agent: list[str]):
        """Test a later exit is reported once, as the last event."""
        events: list = []

        async def scenario():
            coordinator = LifecycleCoordinator(settings)
            handle = await coordinator.launch(
                agent_spec(fake_agent, "--exit-after", "1.0", "--exit-code", "7"),
                on_stdout=lambda text: events.append(("stdout", text)),
                on_exit=lambda code, sig: events.append(("exit", code, sig)),
            )
            state = await asyncio.wait_for(handle.wait(), timeout=10)
            await handle.aclose()
            return handle, state

        handle, state = asyncio.run(scenario())

        assert state.code == 7
        assert events[-1] == ("exit", 7, None)
        assert [e for e in events if e[0] == "exit"] == [("exit", 7, None)]
        assert "shutting down" in "".join(e[1] for e in events if e[0] == "stdout")
        assert handle.lifecycle.state == LifecycleState.EXITED

    def test_caller_cancel_after_running(self, settings: SupervisorSettings, fake_agent: list[str]):
        """Test the caller token still stops the agent once it is running."""
        exits: list = []

        async def scenario():
            cancel = CancellationToken()
            coordinator = LifecycleCoordinator(settings)
            handle = await coordinator.launch(
                agent_spec(fake_agent), cancel=cancel, on_exit=lambda code, sig: exits.append((code, sig)),
            )
            cancel.cancel("shutdown")
            await asyncio.wait_for(handle.wait(), timeout=10)
            await handle.aclose()
            return handle

        handle = asyncio.run(scenario())

        assert len(exits) == 1
        assert handle.process.exit_state.reason == "shutdown"
        assert handle.lifecycle.state == LifecycleState.ABORTED

    def test_lock_held_while_running(self, settings: SupervisorSettings, fake_agent: list[str], temp_dir: Path):
        """Test a second supervisor is refused while the first agent runs."""
        lock_path = temp_dir / "agent"

        async def scenario():
            first = LifecycleCoordinator(settings)
            handle = await first.launch(agent_spec(fake_agent, lock_path=lock_path))
            try:
                assert LockManager().is_held(lock_path)
                other = LifecycleCoordinator(settings, lock_manager=LockManager(pid=os.getpid() + 1))
                with pytest.raises(Locked):
                    await other.launch(agent_spec(fake_agent, lock_path=lock_path))
            finally:
                await handle.aclose()

        asyncio.run(scenario())

        assert not (temp_dir / "agent.lock").exists()

    def test_dispose_kills_agent(self, settings: SupervisorSettings, fake_agent: list[str], temp_dir: Path):
        """Test the synchronous dispose stops the agent and frees the lock."""
        lock_path = temp_dir / "agent"

        async def scenario():
            coordinator = LifecycleCoordinator(settings)
            handle = await coordinator.launch(agent_spec(fake_agent, lock_path=lock_path))
            handle.dispose()
            state = await asyncio.wait_for(handle.wait(), timeout=10)
            return state

        state = asyncio.run(scenario())

        assert not state.is_running
        assert not (temp_dir / "agent.lock").exists()


@pytest.mark.integration
class TestStartupCleanup:
    """Test that failed startups always finish and clean up."""

    @pytest.mark.skipif(os.name == "nt", reason="requires a POSIX shell")
    def test_cancel_with_grandchild_aborts(self, settings: SupervisorSettings):
        """Test cancelling an agent whose shell left a background job still resolves."""
        launcher = RecordingLauncher()

        async def scenario():
            coordinator = LifecycleCoordinator(settings, launcher=launcher)
            cancel = CancellationToken()
            asyncio.get_running_loop().call_later(0.3, cancel.cancel, "user abort")
            started = time.monotonic()
            with pytest.raises(Aborted):
                await asyncio.wait_for(
                    coordinator.launch(LaunchSpec(command="sh", args=["-c", "sleep 30 & sleep 30"]), cancel=cancel),
                    timeout=10,
                )
            return time.monotonic() - started

        assert asyncio.run(scenario()) < 5
        assert launcher.handles[0].exited

    @pytest.mark.skipif(os.name == "nt", reason="requires a POSIX shell")
    def test_health_timeout_with_grandchild(self, settings: SupervisorSettings):
        """Test a timed-out agent with a background job is killed before the error."""
        launcher = RecordingLauncher()
        probe = HealthProbe(base_delay_ms=10, max_attempts=5, backoff="fixed")

        async def scenario():
            coordinator = LifecycleCoordinator(settings, launcher=launcher, probe=probe)
            with pytest.raises(HealthTimeout):
                await asyncio.wait_for(
                    coordinator.launch(LaunchSpec(command="sh", args=["-c", "sleep 30 & sleep 30"])),
                    timeout=10,
                )

        asyncio.run(scenario())

        assert launcher.handles[0].exited

    def test_cancel_while_waiting_for_lock(self, settings: SupervisorSettings, fake_agent: list[str], temp_dir: Path):
        """Test cancelling during lock retries aborts promptly and starts nothing."""
        lock_path = temp_dir / "agent"
        (temp_dir / "agent.lock").write_text("4242")
        launcher = RecordingLauncher()
        patient = settings.model_copy(update={"lock_retries": 30, "lock_retry_interval_ms": 100})

        async def scenario():
            coordinator = LifecycleCoordinator(
                patient, lock_manager=LockManager(is_alive=lambda pid: True), launcher=launcher,
            )
            cancel = CancellationToken()
            asyncio.get_running_loop().call_later(0.1, cancel.cancel, "shutdown")
            started = time.monotonic()
            with pytest.raises(Aborted) as exc_info:
                await coordinator.launch(agent_spec(fake_agent, lock_path=lock_path), cancel=cancel)
            return exc_info.value, time.monotonic() - started

        error, elapsed = asyncio.run(scenario())

        assert error.reason == "shutdown"
        assert elapsed < 1
        assert launcher.handles == []
        assert (temp_dir / "agent.lock").read_text() == "4242"

    def test_caller_error_reason_is_aborted(self, settings: SupervisorSettings, fake_agent: list[str]):
        """Test a caller cancelling with an error reason still gets Aborted."""
        probe = HealthProbe(base_delay_ms=50, max_attempts=1000, backoff="fixed")
        reason = ProcessError("caller gave up")

        async def scenario():
            coordinator = LifecycleCoordinator(settings, probe=probe)
            cancel = CancellationToken()
            asyncio.get_running_loop().call_later(0.3, cancel.cancel, reason)
            with pytest.raises(Aborted) as exc_info:
                await coordinator.launch(agent_spec(fake_agent, "--never-healthy"), cancel=cancel)
            return exc_info.value

        assert asyncio.run(scenario()).reason is reason
