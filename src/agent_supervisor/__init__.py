"""Agent Supervisor - launch local agent servers, wait for readiness and guard them with pid-file locks."""

__version__ = "1.0.0"

from agent_supervisor.client import AgentClient
from agent_supervisor.core import (
    AgentHandle,
    HealthProbe,
    LifecycleCoordinator,
    LockHandle,
    LockManager,
    ProcessHandle,
    ProcessLauncher,
)
from agent_supervisor.errors import Aborted, HealthTimeout, Locked, NotAcquired, ProcessError, SupervisorError
from agent_supervisor.models import LaunchSpec, LockOptions
from agent_supervisor.utils import CancellationToken, get_free_port

__all__ = [
    "Aborted",
    "AgentClient",
    "AgentHandle",
    "CancellationToken",
    "HealthProbe",
    "HealthTimeout",
    "LaunchSpec",
    "LifecycleCoordinator",
    "LockHandle",
    "LockManager",
    "LockOptions",
    "Locked",
    "NotAcquired",
    "ProcessError",
    "ProcessHandle",
    "ProcessLauncher",
    "SupervisorError",
    "get_free_port",
]
