"""
Tests for the provisioning workflow.

The orchestrator and restore manager are replaced with mocks after the
workflow is built; the profile, generated files and run history are real.
"""

import asyncio
import os
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from deployment.compose_generator import read_env_file
from models.service_models import ScheduleSpec
from updates.errors import CorruptBackup, StewardError
from updates.types import Backup, BackupKind, ServiceInstance, UpdateOutcome, UpdateResult
from updates.workflow import ProvisioningWorkflow, ServiceContext


@pytest.fixture
def instance(digests):
    return ServiceInstance(
        container_id="abc123def456" + "0" * 52,
        name="n8n-app",
        image="n8nio/n8n:latest",
        image_digest=digests['old'],
    )


@pytest.fixture
def a_backup(backup_dir):
    return Backup(
        service='n8n',
        kind=BackupKind.VOLUME,
        path=os.path.join(backup_dir, "n8n_backup_20240310_040000.tar.gz"),
        created_at=datetime(2024, 3, 10, 4, 0, 0, tzinfo=timezone.utc),
        size_bytes=4096,
    )


@pytest.fixture
def probe():
    probe = MagicMock()
    probe.detect = AsyncMock(return_value=None)
    probe.detect_stopped = AsyncMock(return_value=None)
    probe.check_ports = MagicMock(side_effect=lambda desired, allow_shift=False: desired)
    return probe


@pytest.fixture
def backup_manager(a_backup):
    manager = MagicMock()
    manager.retention_days = 7
    manager.prune = MagicMock(return_value=[])
    manager.backup = AsyncMock(return_value=a_backup)
    manager.latest = MagicMock(return_value=a_backup)
    manager.verify = MagicMock()
    return manager


@pytest.fixture
def scheduler():
    scheduler = MagicMock()
    scheduler.ensure_scheduled = MagicMock(return_value=True)
    return scheduler


def _context(client, profile, desired, backup_manager, probe, scheduler, db):
    return ServiceContext(
        client=client,
        profile=profile,
        desired=desired,
        backup_manager=backup_manager,
        factory=MagicMock(),
        verifier=MagicMock(),
        probe=probe,
        scheduler=scheduler,
        schedule_spec=ScheduleSpec(command="docksteward run --service n8n"),
        db=db,
    )


@pytest.fixture
def workflow(mock_docker_client, n8n_profile, n8n_desired, backup_manager, probe, scheduler, test_db):
    wf = ProvisioningWorkflow(
        _context(mock_docker_client, n8n_profile, n8n_desired, backup_manager, probe, scheduler, test_db)
    )
    wf.orchestrator = MagicMock()
    wf.orchestrator.update = AsyncMock()
    wf.restore_manager = MagicMock()
    wf.restore_manager.restore_or_init = AsyncMock()
    wf.restore_manager.restored_from = None
    wf.restore_manager.version = "1.45.0"
    return wf


class TestRunWithRunningInstance:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_updates_then_prunes_and_schedules(
        self, workflow, probe, instance, backup_manager, scheduler, test_db, n8n_profile, a_backup, digests
    ):
        probe.detect.return_value = instance
        workflow.orchestrator.update.return_value = UpdateResult(
            outcome=UpdateOutcome.UPDATED,
            previous_digest=digests['old'],
            new_digest=digests['new'],
            version="1.45.0",
            backup=a_backup,
        )

        summary = await workflow.run()

        assert summary.success
        assert summary.exit_code == 0
        assert summary.outcome == 'updated'
        workflow.restore_manager.restore_or_init.assert_not_awaited()
        backup_manager.prune.assert_called_once()
        scheduler.ensure_scheduled.assert_called_once()
        assert scheduler.ensure_scheduled.call_args[0][0] == "docksteward-n8n-auto-update"
        assert os.path.exists(n8n_profile.compose_path)

        record = test_db.recent_runs()[0]
        assert record.action == 'run'
        assert record.outcome == 'updated'
        assert record.version == "1.45.0"
        assert record.backup_path == a_backup.path

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_already_current_is_success(self, workflow, probe, instance, digests):
        probe.detect.return_value = instance
        workflow.orchestrator.update.return_value = UpdateResult.already_current(digests['old'])

        summary = await workflow.run()

        assert summary.success
        assert summary.outcome == 'already_current'
        assert any('already running the latest image' in line for line in summary.lines)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_update_exits_nonzero(self, workflow, probe, instance, backup_manager, test_db):
        probe.detect.return_value = instance
        workflow.orchestrator.update.return_value = UpdateResult.failure_result(
            "Container did not become healthy", rolled_back=True
        )

        summary = await workflow.run()

        assert not summary.success
        assert summary.exit_code == 1
        assert any('previous container restored' in line for line in summary.lines)
        # Backups are not pruned after a failed update
        backup_manager.prune.assert_not_called()
        record = test_db.recent_runs()[0]
        assert record.outcome == 'failed'
        assert record.rolled_back == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_interrupted_run_is_recorded(self, workflow, probe, instance, test_db):
        probe.detect.return_value = instance
        workflow.orchestrator.update.side_effect = asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await workflow.run()

        assert test_db.recent_runs()[0].outcome == 'interrupted'


    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stopped_container_is_started_not_restored(
        self, workflow, probe, backup_manager, container_builder, digests
    ):
        from updates.probe import instance_from_container
        stopped = container_builder(status="exited")
        probe.detect_stopped.return_value = instance_from_container(stopped)
        workflow.ctx.factory.get = AsyncMock(return_value=stopped)
        workflow.orchestrator.update.return_value = UpdateResult.already_current(digests['old'])

        summary = await workflow.run()

        stopped.start.assert_called_once()
        workflow.orchestrator.update.assert_awaited_once()
        workflow.restore_manager.restore_or_init.assert_not_awaited()
        assert any('was exited, started' in line for line in summary.lines)
        assert summary.outcome == 'already_current'

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stopped_database_waits_for_readiness(
        self, mock_docker_client, postgres_profile, postgres_desired, backup_manager, probe, scheduler, test_db,
        container_builder, digests
    ):
        from updates.probe import instance_from_container
        stopped = container_builder(name="postgres-appdb", status="exited")
        probe.detect_stopped.return_value = instance_from_container(stopped)
        ctx = _context(mock_docker_client, postgres_profile, postgres_desired, backup_manager, probe, scheduler, test_db)
        ctx.factory.get = AsyncMock(return_value=stopped)
        ctx.verifier.wait_ready = AsyncMock()
        wf = ProvisioningWorkflow(ctx)
        wf.orchestrator = MagicMock()
        wf.orchestrator.update = AsyncMock(return_value=UpdateResult.already_current(digests['old']))

        await wf.run(schedule=False)

        ctx.verifier.wait_ready.assert_awaited_once()
        assert ctx.verifier.wait_ready.call_args[0][1][0] == 'pg_isready'
        probe.check_ports.assert_not_called()


class TestRunWithoutInstance:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_restores_from_backup(self, workflow, a_backup, container_builder, test_db):
        from updates.probe import instance_from_container
        workflow.restore_manager.restore_or_init.return_value = instance_from_container(container_builder())
        workflow.restore_manager.restored_from = a_backup

        summary = await workflow.run()

        assert summary.outcome == 'restored'
        assert any(a_backup.filename in line for line in summary.lines)
        workflow.orchestrator.update.assert_not_awaited()
        assert test_db.recent_runs()[0].backup_path == a_backup.path

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fresh_install(self, workflow, container_builder):
        from updates.probe import instance_from_container
        workflow.restore_manager.restore_or_init.return_value = instance_from_container(container_builder())

        summary = await workflow.run()

        assert summary.outcome == 'installed'
        assert any('fresh install' in line for line in summary.lines)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_corrupt_backup_fails_run(self, workflow, test_db, a_backup):
        workflow.restore_manager.restore_or_init.side_effect = CorruptBackup(
            "Backup cannot be read", path=a_backup.path, service='n8n'
        )

        with pytest.raises(CorruptBackup):
            await workflow.run()

        record = test_db.recent_runs()[0]
        assert record.outcome == 'failed'
        assert 'cannot be read' in record.error

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_schedule_flag(self, workflow, scheduler, container_builder):
        from updates.probe import instance_from_container
        workflow.restore_manager.restore_or_init.return_value = instance_from_container(container_builder())

        await workflow.run(schedule=False)

        scheduler.ensure_scheduled.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_shifted_port_written_to_env(
        self, mock_docker_client, postgres_profile, postgres_desired, backup_manager, probe, scheduler, test_db,
        container_builder
    ):
        from updates.probe import instance_from_container
        probe.check_ports.side_effect = lambda desired, allow_shift=False: desired.with_host_port(5432, 5433)
        wf = ProvisioningWorkflow(
            _context(mock_docker_client, postgres_profile, postgres_desired, backup_manager, probe, scheduler, test_db)
        )
        wf.restore_manager = MagicMock()
        wf.restore_manager.restore_or_init = AsyncMock(
            return_value=instance_from_container(container_builder(name="postgres-appdb"))
        )
        wf.restore_manager.restored_from = None
        wf.restore_manager.version = "15.6"

        summary = await wf.run(schedule=False)

        probe.check_ports.assert_called_once()
        assert probe.check_ports.call_args[1]['allow_shift'] is True
        assert read_env_file(postgres_profile.env_path)['POSTGRES_PORT'] == '5433'
        assert any('5433' in line for line in summary.lines)
        assert wf.restore_manager.restore_or_init.call_args[0][0].ports[0].host_port == 5433


class TestStandaloneOperations:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_requires_running_instance(self, workflow):
        with pytest.raises(StewardError):
            await workflow.update()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_backup(self, workflow, probe, instance, backup_manager, a_backup, test_db):
        probe.detect.return_value = instance

        summary = await workflow.backup()

        backup_manager.backup.assert_awaited_once_with(instance)
        assert summary.success
        assert test_db.recent_runs()[0].backup_path == a_backup.path

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_backup_needs_running_instance(self, workflow, backup_manager):
        with pytest.raises(StewardError):
            await workflow.backup()
        backup_manager.backup.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_restore_refuses_running_instance_without_force(self, workflow, probe, instance):
        probe.detect.return_value = instance

        with pytest.raises(StewardError) as exc_info:
            await workflow.restore()

        assert '--force' in exc_info.value.message
        workflow.restore_manager.restore_or_init.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_restore_refuses_stopped_instance_without_force(self, workflow, probe, container_builder):
        from updates.probe import instance_from_container
        probe.detect_stopped.return_value = instance_from_container(container_builder(status="exited"))

        with pytest.raises(StewardError) as exc_info:
            await workflow.restore()

        assert '--force' in exc_info.value.message
        workflow.restore_manager.restore_or_init.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_forced_restore_backs_up_and_replaces(
        self, workflow, probe, instance, backup_manager, a_backup, container_builder
    ):
        from updates.probe import instance_from_container
        probe.detect.return_value = instance
        running = container_builder()
        workflow.ctx.factory.get = AsyncMock(return_value=running)
        workflow.restore_manager.restore_or_init.return_value = instance_from_container(container_builder())

        summary = await workflow.restore(force=True)

        backup_manager.backup.assert_awaited_once_with(instance)
        running.stop.assert_called_once()
        running.remove.assert_called_once()
        assert workflow.restore_manager.restore_or_init.call_args[1]['backup'] is a_backup
        assert summary.outcome == 'restored'

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_restore_checks_archive_first(self, workflow, probe, instance, backup_manager, a_backup):
        backup_manager.verify.side_effect = CorruptBackup("bad", path=a_backup.path)
        probe.detect.return_value = instance

        with pytest.raises(CorruptBackup):
            await workflow.restore(force=True)

        backup_manager.backup.assert_not_awaited()
        probe.detect.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_restore_without_backups(self, workflow, backup_manager):
        backup_manager.latest.return_value = None

        with pytest.raises(StewardError):
            await workflow.restore()

    @pytest.mark.unit
    def test_prune_reports_removed(self, workflow, backup_manager, a_backup):
        backup_manager.prune.return_value = [a_backup]

        summary = workflow.prune()

        assert summary.lines == ["pruned: 1 backup(s) older than 7 days"]

    @pytest.mark.unit
    def test_schedule_already_registered(self, workflow, scheduler):
        scheduler.ensure_scheduled.return_value = False

        summary = workflow.ensure_schedule()

        assert summary.lines == ["schedule: already registered (docksteward-n8n-auto-update)"]
