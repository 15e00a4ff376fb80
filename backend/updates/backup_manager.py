"""
Backup Manager - snapshots of a service's persistent state

Two strategies, chosen by the service profile:
- VolumeArchiver: streams the data directory out of the container as a tar
  archive and stores it gzip-compressed. Restoring extracts the archive over
  the same directory, so data comes back byte-for-byte.
- SqlDumper: runs pg_dump inside the container and stores the gzip'd SQL.
  Dumps are taken with --clean --if-exists so loading one replaces the
  current objects instead of colliding with them.

Backups are immutable files named <service>_backup_<UTC timestamp>.<ext>.
They are only removed by age-based pruning.
"""

import gzip
import io
import logging
import os
import posixpath
import tarfile
import tempfile
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import docker
from docker.errors import DockerException

from updates.errors import BackupFailed, CorruptBackup, StewardError
from updates.types import Backup, BackupKind, ServiceInstance
from utils.async_docker import async_docker_call

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 7

# Read size when streaming archives to and from disk
CHUNK_SIZE = 1024 * 1024


class VolumeArchiver:
    """Backs up a directory inside the container as tar.gz"""

    kind = BackupKind.VOLUME
    # Archive is extracted into the container before it is started
    restore_requires_running = False

    def __init__(self, data_path: str):
        self.data_path = data_path.rstrip('/') or '/'

    def write_backup(self, container, target_path: str) -> None:
        """Stream get_archive() output into a gzip file (blocking, run in a thread)"""
        stream, _stat = container.get_archive(self.data_path)
        with gzip.open(target_path, 'wb') as out:
            for chunk in stream:
                out.write(chunk)

    def restore(self, container, backup_path: str) -> None:
        """Extract the archive over the data directory's parent (blocking)"""
        parent = posixpath.dirname(self.data_path) or '/'
        # The Docker API accepts gzip-compressed tar streams directly
        with open(backup_path, 'rb') as f:
            ok = container.put_archive(parent, f)
        if not ok:
            raise StewardError(f"Docker refused to extract {backup_path} into {parent}")

    def verify(self, backup_path: str) -> int:
        """Read every member of the archive; returns the member count"""
        count = 0
        with tarfile.open(backup_path, 'r:gz') as tar:
            for member in tar:
                count += 1
                if member.isfile():
                    extracted = tar.extractfile(member)
                    if extracted is not None:
                        while extracted.read(CHUNK_SIZE):
                            pass
        return count


class SqlDumper:
    """Backs up a PostgreSQL database as a gzip'd logical dump"""

    kind = BackupKind.DUMP
    # psql needs a running, ready server
    restore_requires_running = True

    RESTORE_TMP_DIR = '/tmp'

    def __init__(self, user: str, database: str):
        self.user = user
        self.database = database

    def dump_command(self) -> List[str]:
        return ['pg_dump', '-U', self.user, '-d', self.database, '--clean', '--if-exists']

    def restore_command(self, sql_path: str) -> List[str]:
        return ['psql', '-U', self.user, '-d', self.database, '-v', 'ON_ERROR_STOP=1', '-q', '-f', sql_path]

    def write_backup(self, container, target_path: str) -> None:
        exit_code, output = container.exec_run(self.dump_command(), demux=True)
        stdout, stderr = output if isinstance(output, tuple) else (output, b'')
        if exit_code != 0:
            message = (stderr or b'').decode('utf-8', errors='replace').strip()
            raise StewardError(f"pg_dump exited with {exit_code}: {message}")
        if not stdout:
            raise StewardError("pg_dump produced no output")
        with gzip.open(target_path, 'wb') as out:
            out.write(stdout)

    def restore(self, container, backup_path: str) -> None:
        with gzip.open(backup_path, 'rb') as f:
            sql = f.read()

        # Ship the plain SQL into the container as a single-file tar
        name = f"docksteward-restore-{int(time.time())}.sql"
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode='w') as tar:
            info = tarfile.TarInfo(name=name)
            info.size = len(sql)
            info.mode = 0o644
            info.mtime = int(time.time())
            tar.addfile(info, io.BytesIO(sql))
        buffer.seek(0)

        if not container.put_archive(self.RESTORE_TMP_DIR, buffer.getvalue()):
            raise StewardError(f"Docker refused to copy the dump into {self.RESTORE_TMP_DIR}")

        sql_path = posixpath.join(self.RESTORE_TMP_DIR, name)
        try:
            exit_code, output = container.exec_run(self.restore_command(sql_path), demux=True)
            if exit_code != 0:
                _stdout, stderr = output if isinstance(output, tuple) else (output, b'')
                message = (stderr or b'').decode('utf-8', errors='replace').strip()
                raise StewardError(f"psql restore exited with {exit_code}: {message}")
        finally:
            container.exec_run(['rm', '-f', sql_path])

    def verify(self, backup_path: str) -> int:
        """Decompress the whole dump; returns the uncompressed size"""
        total = 0
        with gzip.open(backup_path, 'rb') as f:
            while True:
                chunk = f.read(CHUNK_SIZE)
                if not chunk:
                    break
                total += len(chunk)
        return total


class BackupManager:
    """
    Creates, lists, verifies, restores and prunes backups of one service.
    """

    def __init__(
        self,
        client: docker.DockerClient,
        service: str,
        backup_dir: str,
        strategy,
        retention_days: int = DEFAULT_RETENTION_DAYS,
    ):
        """
        Args:
            client: Docker client
            service: Service name, used as the backup file prefix
            backup_dir: Directory holding this service's backups
            strategy: VolumeArchiver or SqlDumper
            retention_days: Backup horizon for prune()
        """
        self.client = client
        self.service = service
        self.backup_dir = backup_dir
        self.strategy = strategy
        self.retention_days = retention_days

    @property
    def kind(self) -> BackupKind:
        return self.strategy.kind

    @property
    def restore_requires_running(self) -> bool:
        return self.strategy.restore_requires_running

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _new_backup_path(self) -> tuple:
        created_at = self._now().replace(microsecond=0)
        path = os.path.join(self.backup_dir, Backup.make_filename(self.service, self.kind, created_at))
        # Two backups in the same second: wait for the next one so names stay unique
        while os.path.exists(path):
            time.sleep(1)
            created_at = self._now().replace(microsecond=0)
            path = os.path.join(self.backup_dir, Backup.make_filename(self.service, self.kind, created_at))
        return created_at, path

    async def backup(self, instance: ServiceInstance) -> Backup:
        """
        Snapshot the persistent data of a running instance.

        The archive is written to a temp file in the backup directory and
        renamed into place, so a failed backup never leaves a partial file
        that would later be picked up as the latest backup.

        Raises:
            BackupFailed: anything went wrong; nothing is left behind
        """
        os.makedirs(self.backup_dir, mode=0o700, exist_ok=True)
        created_at, path = self._new_backup_path()
        fd, tmp_path = tempfile.mkstemp(dir=self.backup_dir, prefix='.partial-')
        os.close(fd)

        logger.info(f"Backing up {self.service} ({instance.name}) to {path}")
        try:
            container = await async_docker_call(self.client.containers.get, instance.container_id)
            await async_docker_call(self.strategy.write_backup, container, tmp_path)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except (DockerException, StewardError, OSError) as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(f"Backup of {self.service} failed: {e}")
            raise BackupFailed(f"Backup of {self.service} failed: {e}", service=self.service) from e
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        backup = Backup(
            service=self.service,
            kind=self.kind,
            path=path,
            created_at=created_at,
            size_bytes=os.path.getsize(path),
        )
        logger.info(f"Backup created: {backup.filename} ({backup.size_bytes} bytes)")
        return backup

    def list_backups(self) -> List[Backup]:
        """All backups of this service, newest first"""
        if not os.path.isdir(self.backup_dir):
            return []
        backups = []
        for entry in os.listdir(self.backup_dir):
            backup = Backup.from_path(os.path.join(self.backup_dir, entry))
            if backup is None or backup.service != self.service or backup.kind != self.kind:
                continue
            backups.append(backup)
        backups.sort(key=lambda b: b.created_at, reverse=True)
        return backups

    def latest(self) -> Optional[Backup]:
        backups = self.list_backups()
        return backups[0] if backups else None

    def verify(self, backup: Backup) -> None:
        """
        Read a backup end to end.

        Raises:
            CorruptBackup: unreadable, truncated or empty archive
        """
        try:
            size = self.strategy.verify(backup.path)
        except (OSError, EOFError, tarfile.TarError, gzip.BadGzipFile) as e:
            raise CorruptBackup(
                f"Backup {backup.filename} cannot be read: {e}", path=backup.path, service=self.service
            ) from e
        if size == 0:
            raise CorruptBackup(f"Backup {backup.filename} is empty", path=backup.path, service=self.service)
        logger.info(f"Backup {backup.filename} verified")

    async def restore_into(self, container, backup: Backup) -> None:
        """
        Load a backup into a container.

        Volume backups must be restored before the container starts, dumps
        after the database is ready (see restore_requires_running).
        """
        logger.info(f"Restoring {backup.filename} into {container.name}")
        try:
            await async_docker_call(self.strategy.restore, container, backup.path)
        except (DockerException, OSError, EOFError, tarfile.TarError) as e:
            raise StewardError(f"Restoring {backup.filename} failed: {e}", service=self.service) from e
        logger.info(f"Restored {backup.filename} into {container.name}")

    def prune(self, now: Optional[datetime] = None) -> List[Backup]:
        """
        Delete backups strictly older than the retention horizon.

        A backup exactly at the horizon is kept. The number of backups does
        not matter, only their age.

        Returns:
            The backups that were removed
        """
        now = now or self._now()
        cutoff = now - timedelta(days=self.retention_days)
        removed = []
        for backup in self.list_backups():
            if backup.created_at < cutoff:
                try:
                    os.unlink(backup.path)
                except FileNotFoundError:
                    continue
                logger.info(f"Pruned backup {backup.filename} (older than {self.retention_days} days)")
                removed.append(backup)
        if not removed:
            logger.debug(f"No {self.service} backups older than {self.retention_days} days")
        return removed
