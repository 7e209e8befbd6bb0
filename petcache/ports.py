"""Local port selection for the cache server."""

import logging
import socket
from typing import Optional

LOG = logging.getLogger(__name__)

DEFAULT_PORT_RANGE = (8103, 8200)


def _can_bind(host: str, port: int) -> bool:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
        return True
    except OSError:
        return False
    finally:
        sock.close()


def find_available_port(
    start: int = DEFAULT_PORT_RANGE[0],
    end: int = DEFAULT_PORT_RANGE[1],
    host: str = "127.0.0.1",
) -> Optional[int]:
    """Return the lowest port in [start, end) that binds on ``host``, or None.

    The probe socket is closed before returning, so another process may grab
    the port before the server binds it.
    """
    for port in range(int(start), int(end)):
        if _can_bind(host, port):
            return port
        LOG.debug("Port %s on %s is busy", port, host)
    LOG.warning("No free port in %s-%s on %s", start, int(end) - 1, host)
    return None
