"""
Container creation from a DesiredConfiguration.

Containers are created stopped so callers can overlay restored data into
the mounts before the service starts for the first time.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import docker
from docker.errors import ImageNotFound, NotFound

from models.service_models import DesiredConfiguration
from updates.errors import PullFailed
from utils.async_docker import async_docker_call

logger = logging.getLogger(__name__)


def build_create_kwargs(desired: DesiredConfiguration) -> Dict[str, Any]:
    """Translate a desired configuration into containers.create() keyword arguments"""
    kwargs: Dict[str, Any] = {
        'name': desired.container_name,
        'detach': True,
        'environment': dict(desired.environment),
        'labels': dict(desired.labels),
        'restart_policy': {'Name': desired.restart_policy},
    }

    if desired.restart_policy == 'on-failure':
        kwargs['restart_policy']['MaximumRetryCount'] = 5

    if desired.ports:
        kwargs['ports'] = {p.container_key: p.host_port for p in desired.ports}

    if desired.volumes:
        kwargs['volumes'] = {
            v.source: {'bind': v.target, 'mode': 'ro' if v.read_only else 'rw'}
            for v in desired.volumes
        }

    if desired.healthcheck:
        kwargs['healthcheck'] = desired.healthcheck.to_docker()

    return kwargs


class ContainerFactory:
    """Creates, replaces and removes service containers through the Docker SDK"""

    def __init__(self, client: docker.DockerClient, pull_timeout: int = 1800):
        self.client = client
        self.pull_timeout = pull_timeout

    async def ensure_image(self, image: str):
        """Return the local image, pulling it when missing"""
        try:
            return await async_docker_call(self.client.images.get, image)
        except ImageNotFound:
            logger.info(f"Image {image} not present locally, pulling")
        return await self.pull(image)

    async def pull(self, image: str):
        """
        Pull an image and return the resulting Image object.

        Raises:
            PullFailed: registry error, unknown image or timeout
        """
        try:
            pulled = await asyncio.wait_for(
                async_docker_call(self.client.images.pull, image),
                timeout=self.pull_timeout
            )
        except asyncio.TimeoutError:
            raise PullFailed(f"Image pull timed out after {self.pull_timeout} seconds for {image}")
        except docker.errors.DockerException as e:
            raise PullFailed(f"Error pulling image {image}: {e}") from e

        # A pull without a tag in the reference can return a list of images
        if isinstance(pulled, list):
            if not pulled:
                raise PullFailed(f"Registry returned no image for {image}")
            pulled = pulled[0]
        logger.debug(f"Pulled {image} -> {pulled.id[:19]}")
        return pulled

    async def ensure_volumes(self, desired: DesiredConfiguration):
        """Create named volumes that don't exist yet"""
        for mount in desired.volumes:
            if mount.kind != 'volume':
                continue
            try:
                await async_docker_call(self.client.volumes.get, mount.source)
            except NotFound:
                logger.info(f"Creating volume {mount.source}")
                await async_docker_call(
                    self.client.volumes.create,
                    name=mount.source,
                    labels=dict(desired.labels),
                )

    async def create(self, desired: DesiredConfiguration):
        """Create (but do not start) the container described by desired"""
        await self.ensure_volumes(desired)
        kwargs = build_create_kwargs(desired)
        logger.info(f"Creating container {desired.container_name} from {desired.image}")
        return await async_docker_call(self.client.containers.create, desired.image, **kwargs)

    async def get(self, name_or_id: str) -> Optional[Any]:
        """Return a container or None"""
        try:
            return await async_docker_call(self.client.containers.get, name_or_id)
        except NotFound:
            return None

    async def remove_stale(self, name: str) -> bool:
        """
        Remove a non-running container that holds the target name.

        Returns:
            True if a container was removed
        """
        container = await self.get(name)
        if container is None:
            return False
        if container.status == 'running':
            return False
        logger.info(f"Removing stale container {name} (status: {container.status})")
        await async_docker_call(container.remove, force=True)
        return True
