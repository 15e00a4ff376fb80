"""
Host port availability checks.
"""

import errno
import logging
import socket
from typing import Optional

logger = logging.getLogger(__name__)

MAX_PORT = 65535


def is_port_free(port: int, host: str = '0.0.0.0', protocol: str = 'tcp') -> bool:
    """
    Check whether a host port can be bound.

    Binding (rather than connecting) also catches listeners that only
    accept on a specific interface.
    """
    sock_type = socket.SOCK_STREAM if protocol == 'tcp' else socket.SOCK_DGRAM
    with socket.socket(socket.AF_INET, sock_type) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError as e:
            if e.errno in (errno.EADDRINUSE, errno.EACCES):
                return False
            raise
    return True


def find_free_port(start: int, host: str = '0.0.0.0', protocol: str = 'tcp') -> Optional[int]:
    """Return the first free port at or above start, or None if none is left"""
    for port in range(start, MAX_PORT + 1):
        if is_port_free(port, host, protocol):
            return port
    return None
