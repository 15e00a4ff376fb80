"""
Provisioning workflow

Glues the components together for one service:

    probe -> running?  yes -> backup -> update -> verify (rollback on failure)
                       stopped -> start, then as running
                       no  -> restore latest backup, or clean install
          -> prune old backups
          -> register the periodic re-run

Every state-changing entry point records a RunRecord and returns a
RunSummary the CLI prints. Components receive their configuration through
ServiceContext; nothing reads globals.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import docker

from database import DatabaseManager
from deployment.compose_generator import write_service_files
from deployment.container_factory import ContainerFactory
from deployment.profiles import ServiceProfile
from models.service_models import DesiredConfiguration, ScheduleSpec
from scheduling.cron import CrontabScheduler
from updates.backup_manager import BackupManager
from updates.errors import StewardError
from updates.probe import EnvironmentProbe, instance_from_container
from updates.restore_manager import RestoreManager
from updates.types import Backup, ServiceInstance, UpdateOutcome, UpdateResult
from updates.update_executor import UpdateOrchestrator
from utils.async_docker import async_docker_call
from utils.container_health import InstanceVerifier

logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    """Everything one run needs, built once by the CLI"""
    client: docker.DockerClient
    profile: ServiceProfile
    desired: DesiredConfiguration
    backup_manager: BackupManager
    factory: ContainerFactory
    verifier: InstanceVerifier
    probe: EnvironmentProbe
    scheduler: Optional[CrontabScheduler] = None
    schedule_spec: Optional[ScheduleSpec] = None
    db: Optional[DatabaseManager] = None
    allow_backup_failure: bool = False


@dataclass
class RunSummary:
    """Human-readable outcome of a command"""
    service: str
    action: str
    outcome: str
    lines: List[str] = field(default_factory=list)
    success: bool = True

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def add(self, line: str):
        self.lines.append(line)


def _short(digest: Optional[str]) -> str:
    if not digest:
        return '?'
    return digest[:19]


class ProvisioningWorkflow:
    """Runs the probe/backup/update/restore/schedule flow for one service"""

    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx
        self.orchestrator = UpdateOrchestrator(
            ctx.client,
            ctx.profile,
            ctx.backup_manager,
            ctx.factory,
            ctx.verifier,
            allow_backup_failure=ctx.allow_backup_failure,
        )
        self.restore_manager = RestoreManager(
            ctx.client,
            ctx.profile,
            ctx.backup_manager,
            ctx.factory,
            ctx.verifier,
        )

    @property
    def service(self) -> str:
        return self.ctx.profile.name

    # ------------------------------------------------------------------
    # Run history
    # ------------------------------------------------------------------

    def _start_record(self, action: str) -> Optional[int]:
        if self.ctx.db is None:
            return None
        return self.ctx.db.start_run(self.service, action, self.ctx.desired.container_name)

    def _finish_record(self, run_id: Optional[int], summary: RunSummary, **kwargs):
        if self.ctx.db is None or run_id is None:
            return
        self.ctx.db.finish_run(run_id, summary.outcome, **kwargs)

    async def _recorded(self, action: str, coro_factory):
        """Run an async step with a run record around it"""
        run_id = self._start_record(action)
        try:
            summary, details = await coro_factory()
        except StewardError as e:
            if self.ctx.db is not None and run_id is not None:
                self.ctx.db.finish_run(run_id, 'failed', error=e.message)
            raise
        except BaseException as e:
            # Interrupts and unexpected errors still close the record
            if self.ctx.db is not None and run_id is not None:
                outcome = 'interrupted' if not isinstance(e, Exception) else 'failed'
                self.ctx.db.finish_run(run_id, outcome, error=str(e) or type(e).__name__)
            raise
        self._finish_record(run_id, summary, **details)
        return summary

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(self, schedule: bool = True) -> RunSummary:
        """Full workflow: update the running instance, or restore / install it"""
        return await self._recorded('run', lambda: self._run(schedule))

    async def _run(self, schedule: bool):
        ctx = self.ctx
        summary = RunSummary(service=self.service, action='run', outcome='ok')
        details = {}

        instance = await self._detect()
        if instance is None:
            instance = await self._start_stopped(summary)

        if instance is not None:
            self._write_files(ctx.desired)
            result = await self.orchestrator.update(instance, ctx.desired)
            self._summarize_update(summary, result)
            details = self._update_details(result)
        else:
            desired = ctx.probe.check_ports(ctx.desired, allow_shift=ctx.profile.allow_port_shift)
            if desired is not ctx.desired:
                summary.add(f"port: {ctx.desired.ports[0].host_port} in use, published on {desired.ports[0].host_port}")
                ctx.desired = desired
            self._write_files(desired)
            new_instance = await self.restore_manager.restore_or_init(desired)
            restored = self.restore_manager.restored_from
            summary.outcome = 'restored' if restored else 'installed'
            if restored:
                summary.add(f"{self.service}: restored from {restored.filename} (version {self.restore_manager.version})")
            else:
                summary.add(f"{self.service}: fresh install (version {self.restore_manager.version})")
            summary.add(f"container: {new_instance.name} ({new_instance.short_id})")
            details = {
                'new_digest': new_instance.image_digest,
                'version': self.restore_manager.version,
                'backup_path': restored.path if restored else None,
            }

        if summary.success:
            self._prune(summary)

        if schedule:
            self._schedule(summary)

        for line in ctx.profile.connection_info(ctx.desired):
            summary.add(line)

        return summary, details

    async def update(self) -> RunSummary:
        """Update only; the service must be running"""
        return await self._recorded('update', self._update)

    async def _update(self):
        ctx = self.ctx
        summary = RunSummary(service=self.service, action='update', outcome='ok')
        instance = await self._detect()
        if instance is None:
            raise StewardError(
                f"{self.service} is not running; use 'run' or 'restore' to bring it up",
                service=self.service,
            )
        self._write_files(ctx.desired)
        result = await self.orchestrator.update(instance, ctx.desired)
        self._summarize_update(summary, result)
        if summary.success:
            self._prune(summary)
        return summary, self._update_details(result)

    async def backup(self) -> RunSummary:
        """Take a backup of the running instance"""
        return await self._recorded('backup', self._backup)

    async def _backup(self):
        ctx = self.ctx
        summary = RunSummary(service=self.service, action='backup', outcome='ok')
        instance = await self._detect()
        if instance is None:
            raise StewardError(f"{self.service} is not running, nothing to back up", service=self.service)
        backup = await ctx.backup_manager.backup(instance)
        summary.add(f"backup: {backup.path} ({backup.size_bytes} bytes)")
        self._prune(summary)
        return summary, {'backup_path': backup.path, 'previous_digest': instance.image_digest}

    async def restore(self, backup: Optional[Backup] = None, force: bool = False) -> RunSummary:
        """
        Restore from a backup (latest by default).

        A running instance is left alone unless force is set, in which case
        it is backed up, stopped and removed first.
        """
        return await self._recorded('restore', lambda: self._restore(backup, force))

    async def _restore(self, backup: Optional[Backup], force: bool):
        ctx = self.ctx
        summary = RunSummary(service=self.service, action='restore', outcome='restored')

        target = backup or ctx.backup_manager.latest()
        if target is None:
            raise StewardError(f"No backups found for {self.service}", service=self.service)
        # Check the archive before touching a running instance
        ctx.backup_manager.verify(target)

        instance = await self._detect()
        if instance is not None:
            if not force:
                raise StewardError(
                    f"{self.service} is running ({instance.name}); pass --force to replace it with the backup",
                    service=self.service,
                )
            safety = await ctx.backup_manager.backup(instance)
            summary.add(f"safety backup: {safety.path}")
            container = await ctx.factory.get(instance.container_id)
            if container is not None:
                await async_docker_call(container.stop, timeout=30)
                await async_docker_call(container.remove)
                logger.info(f"Removed running container {instance.name} before restore")
        elif not force:
            stopped = await ctx.probe.detect_stopped(ctx.desired)
            if stopped is not None:
                raise StewardError(
                    f"{self.service} has a stopped container ({stopped.name}, {stopped.status}) whose data "
                    f"would be replaced; pass --force to restore over it",
                    service=self.service,
                )

        self._write_files(ctx.desired)
        new_instance = await self.restore_manager.restore_or_init(ctx.desired, backup=target)
        summary.add(f"{self.service}: restored from {target.filename} (version {self.restore_manager.version})")
        summary.add(f"container: {new_instance.name} ({new_instance.short_id})")
        return summary, {
            'new_digest': new_instance.image_digest,
            'version': self.restore_manager.version,
            'backup_path': target.path,
        }

    def prune(self) -> RunSummary:
        summary = RunSummary(service=self.service, action='prune', outcome='ok')
        self._prune(summary)
        return summary

    def ensure_schedule(self) -> RunSummary:
        summary = RunSummary(service=self.service, action='schedule', outcome='ok')
        self._schedule(summary)
        return summary

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _start_stopped(self, summary: RunSummary) -> Optional[ServiceInstance]:
        """
        Start a stopped container of the service.

        Its data is newer than any backup, so it goes through the update
        path instead of being replaced by a restore.
        """
        ctx = self.ctx
        stopped = await ctx.probe.detect_stopped(ctx.desired)
        if stopped is None:
            return None
        container = await ctx.factory.get(stopped.container_id)
        if container is None:
            return None

        logger.info(f"Starting stopped container {stopped.name} (status: {stopped.status})")
        await async_docker_call(container.start)
        readiness = ctx.profile.readiness_command(ctx.desired)
        if readiness:
            await ctx.verifier.wait_ready(container.id, readiness)
        await async_docker_call(container.reload)
        summary.add(f"{stopped.name}: was {stopped.status}, started")
        return instance_from_container(container)

    async def _detect(self):
        return await self.ctx.probe.detect(self.ctx.desired, adopt_unlabeled=self.ctx.profile.adopt_unlabeled)

    def _write_files(self, desired: DesiredConfiguration):
        profile = self.ctx.profile
        profile.prepare_host(desired)
        write_service_files(
            profile.compose_path,
            profile.env_path,
            desired,
            extras=profile.env_file_extras(desired),
        )

    def _prune(self, summary: RunSummary):
        removed = self.ctx.backup_manager.prune()
        if removed:
            summary.add(
                f"pruned: {len(removed)} backup(s) older than {self.ctx.backup_manager.retention_days} days"
            )

    def _schedule(self, summary: RunSummary):
        ctx = self.ctx
        if ctx.scheduler is None or ctx.schedule_spec is None:
            return
        marker = ctx.profile.schedule_marker
        added = ctx.scheduler.ensure_scheduled(marker, ctx.schedule_spec)
        if added:
            summary.add(f"schedule: registered '{ctx.schedule_spec.expression}' ({marker})")
        else:
            summary.add(f"schedule: already registered ({marker})")

    def _summarize_update(self, summary: RunSummary, result: UpdateResult):
        summary.outcome = result.outcome.value
        if result.outcome is UpdateOutcome.ALREADY_CURRENT:
            summary.add(f"{self.service}: already running the latest image ({_short(result.new_digest)})")
        elif result.outcome is UpdateOutcome.UPDATED:
            summary.add(
                f"{self.service}: updated {_short(result.previous_digest)} -> {_short(result.new_digest)}"
                f" (version {result.version})"
            )
        else:
            summary.success = False
            summary.add(f"{self.service}: update FAILED: {result.reason}")
            if result.rolled_back:
                summary.add(f"{self.service}: previous container restored and running")
            elif result.backup is not None or result.new_digest:
                summary.add(f"{self.service}: rollback did not complete - check the logs")
        if result.backup is not None:
            summary.add(f"backup: {result.backup.path} ({result.backup.size_bytes} bytes)")

    @staticmethod
    def _update_details(result: UpdateResult) -> dict:
        return {
            'previous_digest': result.previous_digest,
            'new_digest': result.new_digest,
            'version': result.version,
            'backup_path': result.backup.path if result.backup else None,
            'rolled_back': result.rolled_back,
            'error': result.reason,
        }
