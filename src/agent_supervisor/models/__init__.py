"""Data models for the agent supervisor."""

from agent_supervisor.models.base import CommandModel, TimestampedModel
from agent_supervisor.models.endpoint import AgentEndpoint
from agent_supervisor.models.health import BackoffPolicy, HealthCheckResult, HealthState
from agent_supervisor.models.lifecycle import (
    Lifecycle,
    LifecycleState,
    LifecycleTransition,
    LaunchSpec,
)
from agent_supervisor.models.lock import LockInfo, LockOptions, LockRecord, lock_file_path
from agent_supervisor.models.process import ExitState, ExitStatus
from agent_supervisor.models.store import StoreEntry, StoreIndex

__all__ = [
    # Base
    "CommandModel",
    "TimestampedModel",
    # Locks
    "LockInfo",
    "LockOptions",
    "LockRecord",
    "lock_file_path",
    # Processes
    "ExitState",
    "ExitStatus",
    # Disk store
    "StoreEntry",
    "StoreIndex",
    # Health
    "BackoffPolicy",
    "HealthCheckResult",
    "HealthState",
    # Launch
    "AgentEndpoint",
    "LaunchSpec",
    "Lifecycle",
    "LifecycleState",
    "LifecycleTransition",
]
