"""Ephemeral port allocation."""

import socket

from agent_supervisor.constants import DEFAULT_HOST


def get_free_port(host: str = DEFAULT_HOST) -> int:
    """Ask the OS for a currently unused TCP port on ``host``.

    The socket is closed before returning, so another process may claim the
    port before the caller binds it. That race is accepted: reserving the
    port would need OS support we do not have.

    Args:
        host: Interface to bind, loopback by default

    Returns:
        The port number the OS assigned
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        sock.listen(1)
        return sock.getsockname()[1]
