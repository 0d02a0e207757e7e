"""Utility functions for the agent supervisor."""

from agent_supervisor.utils.cancellation import CancellationToken
from agent_supervisor.utils.helpers import format_duration, format_exit
from agent_supervisor.utils.ports import get_free_port
from agent_supervisor.utils.process import describe_pid, pid_alive
from agent_supervisor.utils.task_queue import SequentialTaskQueue

__all__ = [
    "CancellationToken",
    "SequentialTaskQueue",
    "describe_pid",
    "format_duration",
    "format_exit",
    "get_free_port",
    "pid_alive",
]
