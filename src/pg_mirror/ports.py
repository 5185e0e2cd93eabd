"""Local TCP port allocation for managed database instances"""

import logging
import socket

from .errors import PortExhaustionError

logger = logging.getLogger(__name__)

DEFAULT_START_PORT = 54320
PORT_WINDOW = 100


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    """Return True if a listener could be bound to host:port right now"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def find_free_port(start: int = DEFAULT_START_PORT) -> int:
    """Find the first free port in [start, start + PORT_WINDOW)

    The port is released again before returning, so another process can
    grab it before the caller binds it. Provisioning happens right after
    allocation, which keeps that window small but does not close it.
    """
    end = start + PORT_WINDOW - 1
    for port in range(start, start + PORT_WINDOW):
        if is_port_free(port):
            logger.debug(f"Found free port {port}")
            return port
    raise PortExhaustionError(start, end)
