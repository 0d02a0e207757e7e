"""Core supervision components: locks, processes, health and lifecycle."""

from agent_supervisor.core.coordinator import AgentHandle, LifecycleCoordinator
from agent_supervisor.core.health import HealthProbe
from agent_supervisor.core.launcher import ProcessHandle, ProcessLauncher
from agent_supervisor.core.lockfile import LockHandle, LockManager

__all__ = [
    "AgentHandle",
    "HealthProbe",
    "LifecycleCoordinator",
    "LockHandle",
    "LockManager",
    "ProcessHandle",
    "ProcessLauncher",
]
