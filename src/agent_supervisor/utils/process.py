"""Process liveness probes."""

import os
from typing import Callable

import psutil

IsAlive = Callable[[int], bool]


def pid_alive(pid: int) -> bool:
    """Check whether a process with ``pid`` exists.

    Delivers signal 0 and inspects the outcome: "no such process" means dead,
    "permission denied" proves the process exists under another user. Windows
    has no signal-0 semantics, so the process table is queried instead.
    """
    if pid <= 0:
        return False
    if os.name == "nt":
        return psutil.pid_exists(pid)
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OverflowError:
        return False
    return True


def describe_pid(pid: int) -> str | None:
    """Get a short description (process name) for a live pid."""
    try:
        return psutil.Process(pid).name()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return None
