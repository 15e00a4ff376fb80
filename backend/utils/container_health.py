"""
Shared container health check utility.

Used after every (re)creation of a service container:
- Updates (updates/update_executor.py)
- Restores and first installs (updates/restore_manager.py)

A container is only considered verified when it is running (healthy when
it has a Docker HEALTHCHECK), its readiness command succeeds if the
service has one, it reports a version string, and its HTTP health
endpoint answers when one is configured. All of it must happen inside
one overall timeout.
"""

import asyncio
import logging
import time
from typing import List, Optional

import docker
import httpx

from updates.errors import VerificationFailed, VerificationTimeout
from utils.async_docker import async_docker_call

logger = logging.getLogger(__name__)


async def wait_for_container_health(
    client: docker.DockerClient,
    container_id: str,
    timeout: int = 60,
    interval: float = 2,
    stability_wait: float = 3,
) -> Optional[bool]:
    """
    Wait for container to become healthy or stable.

    1. Wait for container to reach "running" state (up to timeout)
    2. If container has Docker HEALTHCHECK: poll for "healthy" status
       - Short-circuits immediately when "healthy" detected
       - Returns False immediately if "unhealthy" detected
    3. If no health check: wait for stability, verify still running

    Args:
        client: Docker SDK client instance
        container_id: Container ID or name
        timeout: Maximum time to wait in seconds
        interval: Fixed sleep between polls
        stability_wait: Seconds a container without HEALTHCHECK must stay up

    Returns:
        True if container is healthy/stable
        False if container is unhealthy, crashed or vanished
        None if the timeout was reached
    """
    start_time = time.monotonic()

    while time.monotonic() - start_time < timeout:
        try:
            container = await async_docker_call(client.containers.get, container_id)
        except docker.errors.NotFound:
            logger.error(f"Container {container_id} not found during health check")
            return False

        state = container.attrs.get("State", {})

        if not state.get("Running", False):
            # Exited for good - no point waiting for the rest of the timeout
            if state.get("Status") in ("exited", "dead") and not state.get("Restarting", False):
                logger.error(
                    f"Container {container_id} is {state.get('Status')} "
                    f"(exit code {state.get('ExitCode')})"
                )
                return False
            await asyncio.sleep(interval)
            continue

        health = state.get("Health")
        if health:
            status = health.get("Status")
            if status == "healthy":
                logger.info(f"Container {container_id} is healthy")
                return True
            elif status == "unhealthy":
                logger.error(f"Container {container_id} is unhealthy")
                return False
            logger.debug(f"Container {container_id} health status: {status}, waiting...")
            await asyncio.sleep(interval)
        else:
            logger.info(f"Container {container_id} has no health check, waiting {stability_wait}s for stability")
            await asyncio.sleep(stability_wait)

            container = await async_docker_call(client.containers.get, container_id)
            state = container.attrs.get("State", {})
            if state.get("Running", False):
                logger.info(f"Container {container_id} stable after {stability_wait}s, considering healthy")
                return True
            else:
                logger.error(f"Container {container_id} crashed within {stability_wait}s of starting")
                return False

    logger.error(f"Health check timeout after {timeout}s for container {container_id}")
    return None


async def exec_in_container(container, command: List[str]) -> tuple:
    """Run a command in a container, returning (exit_code, decoded output)"""
    result = await async_docker_call(container.exec_run, command)
    output = result.output.decode('utf-8', errors='replace') if result.output else ''
    return result.exit_code, output.strip()


class InstanceVerifier:
    """
    Verifies a freshly started service container within a bounded time.

    Polling uses a fixed interval; there is no backoff.
    """

    def __init__(
        self,
        client: docker.DockerClient,
        timeout: int = 60,
        interval: float = 2,
    ):
        self.client = client
        self.timeout = timeout
        self.interval = interval

    def _remaining(self, deadline: float) -> float:
        return deadline - time.monotonic()

    async def verify(
        self,
        container_id: str,
        version_command: List[str],
        readiness_command: Optional[List[str]] = None,
        health_url: Optional[str] = None,
    ) -> str:
        """
        Verify a container and return the version string it reports.

        Raises:
            VerificationTimeout: not healthy before the deadline
            VerificationFailed: crashed, unhealthy or reported no version
        """
        deadline = time.monotonic() + self.timeout

        healthy = await wait_for_container_health(
            self.client, container_id, timeout=self.timeout, interval=self.interval
        )
        if healthy is None:
            raise VerificationTimeout(
                f"Container {container_id} did not become healthy within {self.timeout}s",
                timeout=self.timeout,
            )
        if not healthy:
            raise VerificationFailed(f"Container {container_id} crashed or reported unhealthy")

        container = await async_docker_call(self.client.containers.get, container_id)

        if readiness_command:
            await self._wait_for_command(container, readiness_command, deadline)

        version = await self._read_version(container, version_command, deadline)

        if health_url:
            await self._wait_for_http(health_url, deadline)

        logger.info(f"Container {container_id} verified, version {version}")
        return version

    async def wait_ready(self, container_id: str, readiness_command: List[str]) -> None:
        """Wait only for the readiness command (used before loading a dump)"""
        deadline = time.monotonic() + self.timeout
        container = await async_docker_call(self.client.containers.get, container_id)
        await self._wait_for_command(container, readiness_command, deadline)

    async def _wait_for_command(self, container, command: List[str], deadline: float) -> None:
        while True:
            exit_code, output = await exec_in_container(container, command)
            if exit_code == 0:
                logger.info(f"Readiness check passed: {' '.join(command)}")
                return
            logger.debug(f"Readiness check '{' '.join(command)}' returned {exit_code}: {output}")
            if self._remaining(deadline) <= 0:
                raise VerificationTimeout(
                    f"Readiness check '{' '.join(command)}' did not pass within {self.timeout}s",
                    timeout=self.timeout,
                )
            await asyncio.sleep(self.interval)

    async def _read_version(self, container, command: List[str], deadline: float) -> str:
        while True:
            exit_code, output = await exec_in_container(container, command)
            if exit_code == 0 and output:
                # Some images print banners; the version is the last line
                return output.splitlines()[-1].strip()
            logger.debug(f"Version command '{' '.join(command)}' returned {exit_code}: {output}")
            if self._remaining(deadline) <= 0:
                raise VerificationFailed(
                    f"Container did not report a version ('{' '.join(command)}' exit code {exit_code})"
                )
            await asyncio.sleep(self.interval)

    async def _wait_for_http(self, url: str, deadline: float) -> None:
        async with httpx.AsyncClient(timeout=5.0) as client:
            while True:
                try:
                    response = await client.get(url)
                    if 200 <= response.status_code < 300:
                        logger.info(f"HTTP health check passed: {url}")
                        return
                    logger.debug(f"HTTP health check {url} returned {response.status_code}")
                except httpx.HTTPError as e:
                    logger.debug(f"HTTP health check {url} failed: {e}")
                if self._remaining(deadline) <= 0:
                    raise VerificationTimeout(
                        f"HTTP health check {url} did not pass within {self.timeout}s",
                        timeout=self.timeout,
                    )
                await asyncio.sleep(self.interval)
