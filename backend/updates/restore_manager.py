"""
Restore Manager

Brings a service back when no instance is running: from the most recent
backup when one exists, otherwise as a clean first-time install.

A backup that exists but cannot be read is a hard error. Falling through
to a clean install would start an empty service next to the operator's
real (damaged) data, so restore aborts with CorruptBackup instead.
"""

import logging
from typing import Optional

import docker
from docker.errors import DockerException

from deployment.container_factory import ContainerFactory
from deployment.profiles import ServiceProfile
from models.service_models import DesiredConfiguration
from updates.backup_manager import BackupManager
from updates.errors import StewardError
from updates.probe import instance_from_container
from updates.types import Backup, ServiceInstance
from utils.async_docker import async_docker_call
from utils.container_health import InstanceVerifier

logger = logging.getLogger(__name__)


class RestoreManager:
    """Restores or initialises a service instance from a desired configuration"""

    def __init__(
        self,
        client: docker.DockerClient,
        profile: ServiceProfile,
        backup_manager: BackupManager,
        factory: ContainerFactory,
        verifier: InstanceVerifier,
    ):
        self.client = client
        self.profile = profile
        self.backup_manager = backup_manager
        self.factory = factory
        self.verifier = verifier
        # Backup used by the last restore_or_init() call, None for a clean install
        self.restored_from: Optional[Backup] = None
        self.version: Optional[str] = None

    async def restore_or_init(
        self,
        desired: DesiredConfiguration,
        backup: Optional[Backup] = None,
    ) -> ServiceInstance:
        """
        Materialise a running instance from desired.

        Args:
            desired: Target configuration
            backup: Restore this backup instead of the latest one

        Returns:
            The running, verified instance

        Raises:
            CorruptBackup: the chosen backup cannot be read
            PullFailed: the image is not available
            VerificationTimeout / VerificationFailed: the instance never became healthy
        """
        self.restored_from = None
        self.version = None

        if backup is None:
            backup = self.backup_manager.latest()

        if backup is not None:
            logger.info(f"Restoring {desired.service} from backup {backup.filename}")
            # Aborts before anything is created
            self.backup_manager.verify(backup)
        else:
            logger.info(f"No backup found for {desired.service}, performing a clean install")

        await self.factory.remove_stale(desired.container_name)
        await self.factory.ensure_image(desired.image)
        self.profile.prepare_host(desired)

        container = await self.factory.create(desired)
        try:
            if backup is not None and not self.backup_manager.restore_requires_running:
                await self.backup_manager.restore_into(container, backup)

            await async_docker_call(container.start)
            logger.info(f"Started {desired.container_name}")

            if backup is not None and self.backup_manager.restore_requires_running:
                readiness = self.profile.readiness_command(desired)
                if readiness:
                    await self.verifier.wait_ready(container.id, readiness)
                await self.backup_manager.restore_into(container, backup)

            self.version = await self.verifier.verify(
                container.id,
                self.profile.version_command(desired),
                readiness_command=self.profile.readiness_command(desired),
                health_url=self.profile.health_url(desired),
            )
        except (StewardError, DockerException):
            logger.error(
                f"{desired.container_name} failed to come up; container left in place for inspection "
                f"(docker logs {desired.container_name})"
            )
            raise

        self.restored_from = backup
        await async_docker_call(container.reload)
        instance = instance_from_container(container)
        if backup is not None:
            logger.info(f"{desired.service} restored from {backup.filename} (version {self.version})")
        else:
            logger.info(f"{desired.service} installed fresh (version {self.version})")
        return instance
