"""
Environment probe.

Answers "is the service running, and from which image?" with structured
queries against the Docker API (name filter, then image ancestor filter
narrowed by the management label).
Read-only: nothing here changes container state.
"""

import logging
from typing import List, Optional

import docker
import requests
from docker.errors import DockerException

from models.service_models import DesiredConfiguration
from updates.errors import PortConflict, RuntimeUnavailable
from updates.types import ServiceInstance
from utils.async_docker import async_docker_call
from utils.ports import find_free_port, is_port_free

logger = logging.getLogger(__name__)


def instance_from_container(container) -> ServiceInstance:
    """Build a ServiceInstance from a Docker SDK container object"""
    attrs = container.attrs or {}
    config = attrs.get("Config", {})
    return ServiceInstance(
        container_id=container.id,
        name=container.name,
        image=config.get("Image", ""),
        # Content-addressed ID of the image the container was created from
        image_digest=attrs.get("Image", ""),
        status=container.status,
    )


class EnvironmentProbe:
    """Discovers the live instance of a service"""

    def __init__(self, client: docker.DockerClient):
        self.client = client

    async def _list(self, filters: dict, all_states: bool = False) -> List:
        try:
            return await async_docker_call(self.client.containers.list, all=all_states, filters=filters)
        except (DockerException, requests.exceptions.ConnectionError) as e:
            raise RuntimeUnavailable(f"Could not list containers: {e}") from e

    async def detect(self, desired: DesiredConfiguration, adopt_unlabeled: bool = False) -> Optional[ServiceInstance]:
        """
        Find the running instance of a service.

        The container name is authoritative. When nothing carries the name,
        a running container started from the service's image is accepted
        only if it carries the service's management labels (a renamed
        container we created). With adopt_unlabeled, any running container
        from the image is accepted as well (installs made by hand under a
        different name). Shared images such as postgres must not set it,
        since another application's container would be taken over.

        Raises:
            RuntimeUnavailable: Docker daemon not reachable
        """
        by_name = await self._list({'name': f'^/?{desired.container_name}$', 'status': 'running'})
        # The name filter is a regex match; re-check for an exact name
        by_name = [c for c in by_name if c.name == desired.container_name]
        if by_name:
            instance = instance_from_container(by_name[0])
            logger.info(f"Detected running instance {instance.name} ({instance.short_id}) image={instance.image}")
            return instance

        candidates = []
        if desired.labels:
            labels = [f"{key}={value}" for key, value in desired.labels.items()]
            candidates = await self._list({'ancestor': desired.image, 'label': labels, 'status': 'running'})
        if not candidates and adopt_unlabeled:
            candidates = await self._list({'ancestor': desired.image, 'status': 'running'})

        if candidates:
            if len(candidates) > 1:
                logger.warning(
                    f"{len(candidates)} running containers use {desired.image}; using {candidates[0].name}"
                )
            instance = instance_from_container(candidates[0])
            logger.info(f"Detected running instance {instance.name} ({instance.short_id}) by image {desired.image}")
            return instance

        logger.info(f"No running instance of {desired.service} found")
        return None

    async def detect_stopped(self, desired: DesiredConfiguration) -> Optional[ServiceInstance]:
        """
        Find a stopped container carrying the service's container name.

        Its data is current, so it must be started rather than replaced
        from a backup.
        """
        found = await self._list({'name': f'^/?{desired.container_name}$'}, all_states=True)
        found = [c for c in found if c.name == desired.container_name and c.status != 'running']
        if not found:
            return None
        instance = instance_from_container(found[0])
        logger.info(f"Found stopped instance {instance.name} ({instance.short_id}) status={instance.status}")
        return instance

    def check_ports(self, desired: DesiredConfiguration, allow_shift: bool = False) -> DesiredConfiguration:
        """
        Make sure the published host ports are bindable for a fresh container.

        Args:
            desired: Target configuration
            allow_shift: Move the first port to the next free one instead of failing

        Returns:
            The configuration to use (a copy with a shifted port when allowed)

        Raises:
            PortConflict: A port is taken and shifting is not allowed or impossible
        """
        for index, binding in enumerate(desired.ports):
            if is_port_free(binding.host_port, protocol=binding.protocol):
                logger.info(f"Port {binding.host_port}/{binding.protocol} is free")
                continue

            if allow_shift and index == 0:
                new_port = find_free_port(binding.host_port + 1, protocol=binding.protocol)
                if new_port is None:
                    raise PortConflict(
                        f"Port {binding.host_port} is in use and no free port was found above it",
                        port=binding.host_port,
                        service=desired.service,
                    )
                logger.warning(f"Port {binding.host_port} is in use, using {new_port} instead")
                desired = desired.with_host_port(binding.container_port, new_port)
                continue

            raise PortConflict(
                f"Port {binding.host_port}/{binding.protocol} is already in use",
                port=binding.host_port,
                service=desired.service,
            )
        return desired
