"""
Lifecycle commands for an installed service.

One dispatcher handles start, stop, restart, status, clean, logs and info
so the CLI does not need a helper script per operation. Every command
addresses the container by the name in the desired configuration.
"""

import logging
from enum import Enum
from typing import Callable, List, Optional

import docker
from docker.errors import APIError, NotFound

from deployment.profiles import ServiceProfile
from models.service_models import DesiredConfiguration
from updates.errors import StewardError
from updates.workflow import RunSummary
from utils.async_docker import async_docker_call

logger = logging.getLogger(__name__)

STOP_TIMEOUT = 30


class LifecycleCommand(str, Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    STATUS = "status"
    CLEAN = "clean"
    LOGS = "logs"
    INFO = "info"


class LifecycleManager:
    """Executes lifecycle commands against one service container"""

    def __init__(
        self,
        client: docker.DockerClient,
        profile: ServiceProfile,
        desired: DesiredConfiguration,
        output: Callable[[str], None] = print,
    ):
        self.client = client
        self.profile = profile
        self.desired = desired
        self.output = output

    @property
    def name(self) -> str:
        return self.desired.container_name

    async def _container(self, required: bool = True):
        try:
            return await async_docker_call(self.client.containers.get, self.name)
        except NotFound:
            if required:
                raise StewardError(
                    f"Container {self.name} does not exist; use 'run' to install {self.profile.name}",
                    service=self.profile.name,
                )
            return None

    def _summary(self, command: LifecycleCommand, outcome: str = 'ok') -> RunSummary:
        return RunSummary(service=self.profile.name, action=command.value, outcome=outcome)

    async def dispatch(
        self,
        command: LifecycleCommand,
        confirm: bool = False,
        tail: Optional[int] = 100,
        errors_only: bool = False,
        follow: bool = False,
    ) -> RunSummary:
        """Run one lifecycle command and describe the result"""
        command = LifecycleCommand(command)
        if command is LifecycleCommand.START:
            return await self.start()
        if command is LifecycleCommand.STOP:
            return await self.stop()
        if command is LifecycleCommand.RESTART:
            return await self.restart()
        if command is LifecycleCommand.STATUS:
            return await self.status()
        if command is LifecycleCommand.CLEAN:
            return await self.clean(confirm=confirm)
        if command is LifecycleCommand.LOGS:
            return await self.logs(tail=tail, errors_only=errors_only, follow=follow)
        return self.info()

    async def start(self) -> RunSummary:
        summary = self._summary(LifecycleCommand.START)
        container = await self._container()
        if container.status == 'running':
            summary.add(f"{self.name} is already running")
            return summary
        await async_docker_call(container.start)
        logger.info(f"Started {self.name}")
        summary.add(f"{self.name} started")
        return summary

    async def stop(self) -> RunSummary:
        summary = self._summary(LifecycleCommand.STOP)
        container = await self._container()
        if container.status != 'running':
            summary.add(f"{self.name} is not running ({container.status})")
            return summary
        await async_docker_call(container.stop, timeout=STOP_TIMEOUT)
        logger.info(f"Stopped {self.name}")
        summary.add(f"{self.name} stopped")
        return summary

    async def restart(self) -> RunSummary:
        summary = self._summary(LifecycleCommand.RESTART)
        container = await self._container()
        await async_docker_call(container.restart, timeout=STOP_TIMEOUT)
        logger.info(f"Restarted {self.name}")
        summary.add(f"{self.name} restarted")
        return summary

    async def status(self) -> RunSummary:
        summary = self._summary(LifecycleCommand.STATUS)
        container = await self._container(required=False)
        if container is None:
            summary.outcome = 'missing'
            summary.success = False
            summary.add(f"{self.name} does not exist")
            return summary

        state = container.attrs.get('State', {})
        health = (state.get('Health') or {}).get('Status')
        image = container.attrs.get('Config', {}).get('Image', '?')
        summary.outcome = container.status
        summary.success = container.status == 'running'
        summary.add(f"container: {self.name} ({container.short_id})")
        summary.add(f"state:     {container.status}" + (f" ({health})" if health else ""))
        summary.add(f"image:     {image}")
        summary.add(f"image id:  {container.attrs.get('Image', '?')[:19]}")
        if state.get('StartedAt'):
            summary.add(f"started:   {state['StartedAt']}")
        for port_key, bindings in (container.attrs.get('NetworkSettings', {}).get('Ports') or {}).items():
            for binding in bindings or []:
                summary.add(f"port:      {binding.get('HostIp', '')}:{binding.get('HostPort')} -> {port_key}")
        return summary

    async def clean(self, confirm: bool = False) -> RunSummary:
        """
        Remove the container and its named volumes.

        Bind-mounted host directories and backups are left on disk.
        """
        summary = self._summary(LifecycleCommand.CLEAN)
        if not confirm:
            raise StewardError(
                f"clean removes {self.name} and its data volumes; re-run with --yes to confirm",
                service=self.profile.name,
            )

        container = await self._container(required=False)
        if container is not None:
            if container.status == 'running':
                await async_docker_call(container.stop, timeout=STOP_TIMEOUT)
            await async_docker_call(container.remove)
            logger.info(f"Removed container {self.name}")
            summary.add(f"removed container {self.name}")
        else:
            summary.add(f"container {self.name} did not exist")

        for mount in self.desired.volumes:
            if mount.kind != 'volume':
                continue
            try:
                volume = await async_docker_call(self.client.volumes.get, mount.source)
                await async_docker_call(volume.remove)
                logger.info(f"Removed volume {mount.source}")
                summary.add(f"removed volume {mount.source}")
            except NotFound:
                continue
            except APIError as e:
                summary.success = False
                summary.outcome = 'failed'
                summary.add(f"could not remove volume {mount.source}: {e}")
                logger.error(f"Could not remove volume {mount.source}: {e}")
        return summary

    async def logs(self, tail: Optional[int] = 100, errors_only: bool = False, follow: bool = False) -> RunSummary:
        summary = self._summary(LifecycleCommand.LOGS)
        container = await self._container()

        if follow:
            stream = await async_docker_call(container.logs, stream=True, follow=True, tail=tail or 'all')
            for chunk in stream:
                self.output(chunk.decode('utf-8', errors='replace').rstrip('\n'))
            return summary

        raw = await async_docker_call(container.logs, tail=tail if tail else 'all')
        lines: List[str] = raw.decode('utf-8', errors='replace').splitlines()
        if errors_only:
            lines = [line for line in lines if 'error' in line.lower()]
        summary.lines.extend(lines)
        return summary

    def info(self) -> RunSummary:
        summary = self._summary(LifecycleCommand.INFO)
        summary.add(f"service:   {self.profile.name}")
        summary.add(f"container: {self.name}")
        summary.add(f"image:     {self.desired.image}")
        summary.add(f"compose:   {self.profile.compose_path}")
        summary.add(f"env file:  {self.profile.env_path}")
        summary.lines.extend(self.profile.connection_info(self.desired))
        return summary
