"""
Docker client construction for the local host.

Connection and permission problems are translated into the error taxonomy
so the CLI can abort with a clear message instead of a stack trace.
"""

import errno
import logging
from typing import Optional

import docker
import requests
from docker.errors import DockerException

from updates.errors import PermissionDenied, RuntimeUnavailable

logger = logging.getLogger(__name__)


def _is_permission_error(exc: BaseException) -> bool:
    """Walk the exception chain looking for EACCES/EPERM on the socket"""
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, PermissionError):
            return True
        if isinstance(current, OSError) and current.errno in (errno.EACCES, errno.EPERM):
            return True
        if 'Permission denied' in str(current):
            return True
        current = current.__cause__ or current.__context__
    return False


def connect(url: str = '', timeout: int = 120) -> docker.DockerClient:
    """
    Create a Docker client and verify the daemon answers.

    Args:
        url: Daemon URL (unix:// or tcp://). Empty uses DOCKER_HOST / the default socket.
        timeout: API call timeout in seconds

    Returns:
        Connected DockerClient

    Raises:
        PermissionDenied: The socket exists but this user cannot open it
        RuntimeUnavailable: The daemon is not reachable
    """
    try:
        if url:
            client = docker.DockerClient(base_url=url, timeout=timeout)
        else:
            client = docker.from_env(timeout=timeout)
        client.ping()
    except (DockerException, requests.exceptions.ConnectionError) as e:
        if _is_permission_error(e):
            raise PermissionDenied(
                f"Permission denied talking to the Docker daemon ({url or 'default socket'}). "
                f"Run as root or add this user to the docker group."
            ) from e
        raise RuntimeUnavailable(f"Docker daemon is not reachable ({url or 'default socket'}): {e}") from e

    logger.debug(f"Connected to Docker daemon at {url or 'default socket'}")
    return client
