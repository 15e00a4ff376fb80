"""
Tests for the backup manager.

Covers:
- Volume backups: stream from the container, gzip, verify, extract back
- SQL dumps: pg_dump via exec, restore via psql
- Failed backups never leave a file that looks like a backup
- Listing order and the strict retention boundary used by prune()
"""

import gzip
import io
import os
import tarfile
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, NotFound

from updates.backup_manager import BackupManager, SqlDumper, VolumeArchiver
from updates.errors import BackupFailed, CorruptBackup, StewardError
from updates.types import Backup, BackupKind, ServiceInstance


def _tar_bytes(files: dict) -> bytes:
    """Uncompressed tar stream like Docker's get_archive() returns"""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode='w') as tar:
        for name, content in files.items():
            info = tarfile.TarInfo(name=name)
            info.size = len(content)
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def _touch_backup(directory: str, service: str, kind: BackupKind, created_at: datetime, content: bytes = b'x') -> str:
    path = os.path.join(directory, Backup.make_filename(service, kind, created_at))
    with open(path, 'wb') as f:
        f.write(content)
    return path


@pytest.fixture
def instance():
    return ServiceInstance(
        container_id="abc123def456789012345678901234567890123456789012345678901234",
        name="n8n-app",
        image="n8nio/n8n:latest",
        image_digest="sha256:" + "a" * 64,
    )


@pytest.fixture
def volume_manager(mock_docker_client, backup_dir):
    return BackupManager(mock_docker_client, 'n8n', backup_dir, VolumeArchiver('/home/node/.n8n'))


class TestVolumeBackup:
    """tar.gz backups of a data directory"""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_backup_writes_gzip_archive(self, volume_manager, mock_container, instance, backup_dir):
        tar_data = _tar_bytes({'.n8n/database.sqlite': b'workflows', '.n8n/config': b'{"key": 1}'})
        mock_container.get_archive.return_value = (iter([tar_data[:100], tar_data[100:]]), {})

        backup = await volume_manager.backup(instance)

        mock_container.get_archive.assert_called_once_with('/home/node/.n8n')
        assert backup.kind is BackupKind.VOLUME
        assert backup.filename.startswith('n8n_backup_')
        assert backup.filename.endswith('.tar.gz')
        assert backup.size_bytes > 0
        with tarfile.open(backup.path, 'r:gz') as tar:
            assert sorted(tar.getnames()) == ['.n8n/config', '.n8n/database.sqlite']
        # Only the finished backup is left in the directory
        assert os.listdir(backup_dir) == [backup.filename]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_backup_leaves_no_file(self, volume_manager, mock_docker_client, instance, backup_dir):
        mock_docker_client.containers.get.side_effect = NotFound("gone")

        with pytest.raises(BackupFailed):
            await volume_manager.backup(instance)

        assert os.listdir(backup_dir) == []
        assert volume_manager.latest() is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stream_error_midway_leaves_no_file(self, volume_manager, mock_container, instance, backup_dir):
        def broken_stream():
            yield b'partial'
            raise APIError("connection reset")

        mock_container.get_archive.return_value = (broken_stream(), {})

        with pytest.raises(BackupFailed):
            await volume_manager.backup(instance)

        assert os.listdir(backup_dir) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_restore_extracts_into_parent_directory(self, volume_manager, mock_container, instance):
        tar_data = _tar_bytes({'.n8n/database.sqlite': b'workflows'})
        mock_container.get_archive.return_value = (iter([tar_data]), {})
        backup = await volume_manager.backup(instance)

        received = {}

        def put_archive(path, data):
            received['path'] = path
            received['data'] = data.read()
            return True

        mock_container.put_archive.side_effect = put_archive

        await volume_manager.restore_into(mock_container, backup)

        assert received['path'] == '/home/node'
        # Docker gets the archive exactly as stored
        with open(backup.path, 'rb') as f:
            assert received['data'] == f.read()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_restore_refused_by_docker_raises(self, volume_manager, mock_container, instance):
        mock_container.get_archive.return_value = (iter([_tar_bytes({'.n8n/a': b'1'})]), {})
        backup = await volume_manager.backup(instance)
        mock_container.put_archive.return_value = False

        with pytest.raises(StewardError):
            await volume_manager.restore_into(mock_container, backup)


class TestVerify:
    """verify() reads the whole backup and rejects damaged ones"""

    @pytest.mark.unit
    def test_valid_archive_passes(self, volume_manager, backup_dir):
        content = gzip.compress(_tar_bytes({'.n8n/a': b'data'}))
        path = _touch_backup(backup_dir, 'n8n', BackupKind.VOLUME, datetime(2024, 1, 1, tzinfo=timezone.utc), content)

        volume_manager.verify(Backup.from_path(path))

    @pytest.mark.unit
    def test_garbage_file_is_corrupt(self, volume_manager, backup_dir):
        path = _touch_backup(
            backup_dir, 'n8n', BackupKind.VOLUME, datetime(2024, 1, 1, tzinfo=timezone.utc), b'not a tarball'
        )

        with pytest.raises(CorruptBackup) as exc_info:
            volume_manager.verify(Backup.from_path(path))
        assert exc_info.value.path == path

    @pytest.mark.unit
    def test_truncated_archive_is_corrupt(self, volume_manager, backup_dir):
        content = gzip.compress(_tar_bytes({'.n8n/a': b'x' * 50000}))
        path = _touch_backup(
            backup_dir, 'n8n', BackupKind.VOLUME, datetime(2024, 1, 1, tzinfo=timezone.utc), content[:len(content) // 2]
        )

        with pytest.raises(CorruptBackup):
            volume_manager.verify(Backup.from_path(path))

    @pytest.mark.unit
    def test_empty_archive_is_corrupt(self, volume_manager, backup_dir):
        content = gzip.compress(_tar_bytes({}))
        path = _touch_backup(backup_dir, 'n8n', BackupKind.VOLUME, datetime(2024, 1, 1, tzinfo=timezone.utc), content)

        with pytest.raises(CorruptBackup):
            volume_manager.verify(Backup.from_path(path))


class TestSqlDump:
    """gzip'd pg_dump backups"""

    @pytest.fixture
    def dump_manager(self, mock_docker_client, tmp_path):
        directory = tmp_path / "backups" / "postgres"
        directory.mkdir(parents=True)
        return BackupManager(mock_docker_client, 'postgres', str(directory), SqlDumper('app_user', 'appdb'))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dump_runs_pg_dump_and_compresses(self, dump_manager, mock_container, instance):
        sql = b"DROP TABLE IF EXISTS t;\nCREATE TABLE t (id int);\n"
        mock_container.exec_run.return_value = (0, (sql, b''))

        backup = await dump_manager.backup(instance)

        command = mock_container.exec_run.call_args[0][0]
        assert command[:5] == ['pg_dump', '-U', 'app_user', '-d', 'appdb']
        assert '--clean' in command and '--if-exists' in command
        assert backup.filename.endswith('.sql.gz')
        with gzip.open(backup.path, 'rb') as f:
            assert f.read() == sql
        dump_manager.verify(backup)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pg_dump_failure_is_backup_failure(self, dump_manager, mock_container, instance):
        mock_container.exec_run.return_value = (1, (b'', b'pg_dump: error: connection refused'))

        with pytest.raises(BackupFailed) as exc_info:
            await dump_manager.backup(instance)

        assert 'connection refused' in exc_info.value.message
        assert dump_manager.list_backups() == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_restore_copies_dump_and_runs_psql(self, dump_manager, mock_container, instance):
        sql = b"CREATE TABLE t (id int);\n"
        mock_container.exec_run.return_value = (0, (sql, b''))
        backup = await dump_manager.backup(instance)

        copied = {}

        def put_archive(path, data):
            with tarfile.open(fileobj=io.BytesIO(data)) as tar:
                member = tar.getmembers()[0]
                copied['name'] = member.name
                copied['content'] = tar.extractfile(member).read()
            copied['path'] = path
            return True

        mock_container.put_archive.side_effect = put_archive
        mock_container.exec_run.reset_mock()
        mock_container.exec_run.return_value = (0, (b'', b''))

        await dump_manager.restore_into(mock_container, backup)

        assert copied['path'] == '/tmp'
        assert copied['content'] == sql
        psql_command = mock_container.exec_run.call_args_list[0][0][0]
        assert psql_command[0] == 'psql'
        assert 'ON_ERROR_STOP=1' in psql_command
        assert psql_command[-1] == f"/tmp/{copied['name']}"
        # Temp file removed afterwards
        assert mock_container.exec_run.call_args_list[-1][0][0][:2] == ['rm', '-f']

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_psql_failure_raises_and_still_cleans_up(self, dump_manager, mock_container, instance):
        mock_container.exec_run.return_value = (0, (b"SELECT 1;\n", b''))
        backup = await dump_manager.backup(instance)
        mock_container.put_archive.return_value = True
        mock_container.exec_run.reset_mock()
        mock_container.exec_run.side_effect = [
            (3, (b'', b'ERROR: syntax error')),
            (0, (b'', b'')),
        ]

        with pytest.raises(StewardError) as exc_info:
            await dump_manager.restore_into(mock_container, backup)

        assert 'syntax error' in exc_info.value.message
        assert mock_container.exec_run.call_args_list[-1][0][0][:2] == ['rm', '-f']


class TestListingAndPrune:
    """Ordering by timestamp and the retention horizon"""

    @pytest.mark.unit
    def test_list_backups_newest_first(self, volume_manager, backup_dir):
        base = datetime(2024, 3, 10, 4, 0, 0, tzinfo=timezone.utc)
        for days in (3, 0, 5, 1):
            _touch_backup(backup_dir, 'n8n', BackupKind.VOLUME, base - timedelta(days=days))

        backups = volume_manager.list_backups()

        assert [b.created_at for b in backups] == [
            base, base - timedelta(days=1), base - timedelta(days=3), base - timedelta(days=5)
        ]
        assert volume_manager.latest().created_at == base

    @pytest.mark.unit
    def test_list_ignores_foreign_files(self, volume_manager, backup_dir):
        stamp = datetime(2024, 3, 10, tzinfo=timezone.utc)
        _touch_backup(backup_dir, 'n8n', BackupKind.VOLUME, stamp)
        _touch_backup(backup_dir, 'other', BackupKind.VOLUME, stamp)
        _touch_backup(backup_dir, 'n8n', BackupKind.DUMP, stamp)
        with open(os.path.join(backup_dir, '.partial-abc'), 'wb') as f:
            f.write(b'x')
        with open(os.path.join(backup_dir, 'notes.txt'), 'w') as f:
            f.write('keep')

        backups = volume_manager.list_backups()

        assert len(backups) == 1
        assert backups[0].service == 'n8n'

    @pytest.mark.unit
    def test_prune_boundary_is_strict(self, volume_manager, backup_dir):
        now = datetime(2024, 3, 10, 4, 0, 0, tzinfo=timezone.utc)
        at_horizon = _touch_backup(backup_dir, 'n8n', BackupKind.VOLUME, now - timedelta(days=7))
        past_horizon = _touch_backup(backup_dir, 'n8n', BackupKind.VOLUME, now - timedelta(days=7, seconds=1))
        recent = _touch_backup(backup_dir, 'n8n', BackupKind.VOLUME, now - timedelta(days=1))

        removed = volume_manager.prune(now=now)

        assert [b.path for b in removed] == [past_horizon]
        assert os.path.exists(at_horizon)
        assert os.path.exists(recent)
        assert not os.path.exists(past_horizon)

    @pytest.mark.unit
    def test_prune_ignores_count(self, volume_manager, backup_dir):
        """Many recent backups are all kept"""
        now = datetime(2024, 3, 10, 4, 0, 0, tzinfo=timezone.utc)
        for minutes in range(30):
            _touch_backup(backup_dir, 'n8n', BackupKind.VOLUME, now - timedelta(minutes=minutes))

        assert volume_manager.prune(now=now) == []
        assert len(volume_manager.list_backups()) == 30

    @pytest.mark.unit
    def test_prune_leaves_other_files(self, volume_manager, backup_dir):
        now = datetime(2024, 3, 10, tzinfo=timezone.utc)
        _touch_backup(backup_dir, 'n8n', BackupKind.VOLUME, now - timedelta(days=30))
        notes = os.path.join(backup_dir, 'notes.txt')
        with open(notes, 'w') as f:
            f.write('keep')

        removed = volume_manager.prune(now=now)

        assert len(removed) == 1
        assert os.path.exists(notes)


class TestBackupFilename:

    @pytest.mark.unit
    def test_from_path_parses_timestamp_as_utc(self, tmp_path):
        path = tmp_path / "n8n_backup_20240310_040000.tar.gz"
        path.write_bytes(b'abc')

        backup = Backup.from_path(str(path))

        assert backup.service == 'n8n'
        assert backup.kind is BackupKind.VOLUME
        assert backup.created_at == datetime(2024, 3, 10, 4, 0, 0, tzinfo=timezone.utc)
        assert backup.size_bytes == 3

    @pytest.mark.unit
    def test_from_path_rejects_other_names(self, tmp_path):
        assert Backup.from_path(str(tmp_path / "n8n_backup_latest.tar.gz")) is None
        assert Backup.from_path(str(tmp_path / "n8n_20240310_040000.tar.gz")) is None
