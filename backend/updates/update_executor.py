"""
Update Orchestrator

Compares the digest of the image a service runs with the digest of the
freshly pulled image and, when they differ, replaces the container.

Update workflow:
1. Pull the desired image, read its content digest
2. Same digest as the instance: nothing to do (already current)
3. Back up persistent data (fatal on failure unless explicitly overridden)
4. Stop the old container and rename it to <name>-backup-<epoch>
5. Create and start the new container from the desired configuration
6. Verify it (healthy, ready, reports a version, HTTP health)
7. Success: remove the renamed old container
8. Failure or interruption after step 4: remove the new container, put the
   data backup back, rename the old container back and start it
"""

import asyncio
import logging
import time
from typing import Any, Optional, Tuple

import docker
from docker.errors import DockerException

from deployment.container_factory import ContainerFactory
from deployment.profiles import ServiceProfile
from models.service_models import DesiredConfiguration
from updates.backup_manager import BackupManager
from updates.errors import BackupFailed, PullFailed, StewardError
from updates.probe import instance_from_container
from updates.types import Backup, ServiceInstance, UpdateResult, UpdateOutcome, UpdateStage
from utils.async_docker import async_docker_call
from utils.container_health import InstanceVerifier

logger = logging.getLogger(__name__)


class UpdateOrchestrator:
    """
    Executes digest-driven container updates with backup and rollback.
    """

    def __init__(
        self,
        client: docker.DockerClient,
        profile: ServiceProfile,
        backup_manager: BackupManager,
        factory: ContainerFactory,
        verifier: InstanceVerifier,
        allow_backup_failure: bool = False,
    ):
        """
        Args:
            client: Docker client for the local host
            profile: Service profile (version/readiness/health probes)
            backup_manager: Backups of the service's persistent data
            factory: Creates containers from a desired configuration
            verifier: Post-start verification
            allow_backup_failure: Continue a destructive update when the
                pre-update backup fails (logged as an error)
        """
        self.client = client
        self.profile = profile
        self.backup_manager = backup_manager
        self.factory = factory
        self.verifier = verifier
        self.allow_backup_failure = allow_backup_failure
        self.stage: Optional[UpdateStage] = None

    def _set_stage(self, stage: UpdateStage, message: str = ''):
        self.stage = stage
        if message:
            logger.info(f"[{stage.value}] {message}")

    async def update(self, instance: ServiceInstance, desired: DesiredConfiguration) -> UpdateResult:
        """
        Bring a running instance to the latest image for desired.image.

        Returns:
            UpdateResult with outcome updated, already_current or failed.
            A failed result has rolled_back=True when the previous container
            was put back into service.

        Raises:
            asyncio.CancelledError: re-raised after rollback on interruption
        """
        self._set_stage(UpdateStage.PULLING_IMAGE, f"Pulling {desired.image}")
        try:
            image = await self.factory.pull(desired.image)
        except PullFailed as e:
            logger.error(e.message)
            self._set_stage(UpdateStage.FAILED)
            return UpdateResult.failure_result(e.message, previous_digest=instance.image_digest)

        new_digest = image.id
        self._set_stage(UpdateStage.PULL_COMPLETE, f"Latest digest {new_digest[:19]}, running {instance.image_digest[:19]}")

        if new_digest == instance.image_digest:
            logger.info(f"{instance.name} already runs the latest image, nothing to update")
            self._set_stage(UpdateStage.COMPLETED)
            return UpdateResult.already_current(new_digest)

        # Step 3: backup before anything destructive
        self._set_stage(UpdateStage.CREATING_BACKUP, f"Backing up {instance.name} before update")
        backup: Optional[Backup] = None
        try:
            backup = await self.backup_manager.backup(instance)
            self._set_stage(UpdateStage.BACKUP_CREATED, f"Backup {backup.filename}")
        except BackupFailed as e:
            if not self.allow_backup_failure:
                self._set_stage(UpdateStage.FAILED)
                return UpdateResult.failure_result(
                    f"{e.message}; refusing to update without a backup "
                    f"(use --allow-backup-failure to override)",
                    previous_digest=instance.image_digest,
                    new_digest=new_digest,
                )
            logger.error(
                f"BACKUP FAILED for {instance.name}: {e.message}. "
                f"Continuing because backup failures were explicitly allowed - there is NO rollback data"
            )

        return await self._replace(instance, desired, new_digest, backup)

    async def _replace(
        self,
        instance: ServiceInstance,
        desired: DesiredConfiguration,
        new_digest: str,
        backup: Optional[Backup],
    ) -> UpdateResult:
        old_container = await async_docker_call(self.client.containers.get, instance.container_id)
        original_name = old_container.name
        renamed_container = None
        backup_name = ''
        new_container = None

        try:
            # Step 4: stop + rename
            self._set_stage(UpdateStage.STOPPING_OLD, f"Stopping {original_name}")
            renamed_container, backup_name = await self._rename_container_to_backup(old_container, original_name)

            # Step 5: create + start
            self._set_stage(UpdateStage.CREATING_NEW, f"Creating {desired.container_name} from {desired.image}")
            new_container = await self.factory.create(desired)

            self._set_stage(UpdateStage.STARTING_NEW, f"Starting {desired.container_name}")
            await async_docker_call(new_container.start)

            # Step 6: verify
            self._set_stage(UpdateStage.HEALTH_CHECK, f"Verifying {desired.container_name}")
            version = await self.verifier.verify(
                new_container.id,
                self.profile.version_command(desired),
                readiness_command=self.profile.readiness_command(desired),
                health_url=self.profile.health_url(desired),
            )

        except asyncio.CancelledError:
            logger.warning(f"Update of {original_name} interrupted, rolling back")
            await self._rollback(desired, renamed_container, backup_name, original_name, new_container, backup)
            raise

        except (StewardError, DockerException) as e:
            reason = e.message if isinstance(e, StewardError) else str(e)
            logger.error(f"Update of {original_name} failed at stage {self.stage.value}: {reason}")
            rolled_back = await self._rollback(desired, renamed_container, backup_name, original_name, new_container, backup)
            self._set_stage(UpdateStage.FAILED)
            return UpdateResult.failure_result(
                reason,
                rolled_back=rolled_back,
                previous_digest=instance.image_digest,
                new_digest=new_digest,
                backup=backup,
            )

        # Step 7: cleanup
        self._set_stage(UpdateStage.CLEANUP, f"Removing previous container {backup_name}")
        await self._cleanup_backup_container(renamed_container, backup_name)

        await async_docker_call(new_container.reload)
        new_instance = instance_from_container(new_container)
        self._set_stage(
            UpdateStage.COMPLETED,
            f"{original_name} updated {instance.image_digest[:19]} -> {new_instance.image_digest[:19]} (version {version})"
        )
        return UpdateResult(
            outcome=UpdateOutcome.UPDATED,
            previous_digest=instance.image_digest,
            new_digest=new_instance.image_digest or new_digest,
            new_container_id=new_instance.container_id,
            version=version,
            backup=backup,
        )

    async def _rename_container_to_backup(self, container, original_name: str) -> Tuple[Any, str]:
        """
        Stop and rename container to backup name for rollback capability.

        Containers stopped with stop() carry Docker's "manually stopped" flag
        and will not auto-restart even with restart: always.

        Returns:
            Tuple of (backup_container, backup_name)
        """
        timestamp = int(time.time())
        backup_name = f"{original_name}-backup-{timestamp}"

        await async_docker_call(container.stop, timeout=30)
        logger.info(f"Stopped container {original_name}")

        try:
            await async_docker_call(container.rename, backup_name)
        except DockerException:
            # Leave the service as we found it
            await async_docker_call(container.start)
            raise
        logger.info(f"Renamed {original_name} to {backup_name}")

        return container, backup_name

    async def _rollback(
        self,
        desired: DesiredConfiguration,
        backup_container,
        backup_name: str,
        original_name: str,
        new_container,
        data_backup: Optional[Backup],
    ) -> bool:
        """
        Put the previous container back into service.

        Steps:
        1. Remove the broken new container (if exists)
        2. Restore the pre-update data backup when the service's data may
           have been touched by the new version
        3. Rename the old container back and start it
        4. Verify the restored container

        Returns:
            True if the previous container is running again
        """
        self._set_stage(UpdateStage.ROLLING_BACK, f"Rolling back {original_name}")

        if new_container is not None:
            try:
                await async_docker_call(new_container.remove, force=True)
                logger.info("Removed failed new container")
            except DockerException as e:
                logger.warning(f"Failed to remove new container: {e}")

        if backup_container is None:
            # Failed before the old container was stopped and renamed
            logger.info(f"{original_name} was not modified, nothing to roll back")
            return True

        try:
            # Anything squatting on the original name would block the rename
            existing = await self.factory.get(original_name)
            if existing is not None and existing.id != backup_container.id:
                logger.info("Found container with original name, removing it")
                await async_docker_call(existing.remove, force=True)

            await async_docker_call(backup_container.reload)
            if backup_container.status in ('running', 'restarting'):
                await async_docker_call(backup_container.stop, timeout=10)

            if data_backup is not None and not self.backup_manager.restore_requires_running:
                await self.backup_manager.restore_into(backup_container, data_backup)

            await async_docker_call(backup_container.rename, original_name)
            logger.info(f"Renamed {backup_name} back to {original_name}")

            await async_docker_call(backup_container.start)
            logger.info(f"Started restored container {original_name}")

            if data_backup is not None and self.backup_manager.restore_requires_running:
                readiness = self.profile.readiness_command(desired)
                if readiness:
                    await self.verifier.wait_ready(backup_container.id, readiness)
                await self.backup_manager.restore_into(backup_container, data_backup)

            await self.verifier.verify(
                backup_container.id,
                self.profile.version_command(desired),
                readiness_command=self.profile.readiness_command(desired),
            )
        except (StewardError, DockerException) as e:
            logger.critical(
                f"CRITICAL: Rollback failed for {original_name}: {e}. "
                f"Manual intervention required - previous container: {backup_name}"
                + (f", data backup: {data_backup.path}" if data_backup else ""),
                exc_info=True
            )
            return False

        self._set_stage(UpdateStage.ROLLBACK_COMPLETE, f"Rollback successful: {original_name} restored to previous state")
        return True

    async def _cleanup_backup_container(self, backup_container, backup_name: str):
        """Remove the previous container after a successful update"""
        try:
            await async_docker_call(backup_container.remove, force=True)
            logger.info(f"Removed previous container {backup_name}")
        except DockerException as e:
            # Update succeeded; a leftover stopped container is harmless
            logger.error(f"Error removing previous container {backup_name}: {e}")
