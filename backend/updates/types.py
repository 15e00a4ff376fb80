"""
Shared types for probe, backup, update and restore operations.

Runtime values (discovered instances, backups, results) are plain
dataclasses; declarative configuration lives in models.service_models.
"""

import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


# Docker container ID length (short format)
CONTAINER_ID_SHORT_LENGTH = 12

BACKUP_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

# <service>_backup_YYYYmmdd_HHMMSS.tar.gz | .sql.gz
BACKUP_FILENAME_RE = re.compile(
    r'^(?P<service>[a-zA-Z0-9_.-]+)_backup_(?P<stamp>\d{8}_\d{6})\.(?P<ext>tar\.gz|sql\.gz)$'
)


class UpdateStage(Enum):
    """Stages of a container update."""
    PROBING = "probing"
    PULLING_IMAGE = "pulling_image"
    PULL_COMPLETE = "pull_complete"
    CREATING_BACKUP = "creating_backup"
    BACKUP_CREATED = "backup_created"
    STOPPING_OLD = "stopping_old"
    CREATING_NEW = "creating_new"
    STARTING_NEW = "starting_new"
    HEALTH_CHECK = "health_check"
    CLEANUP = "cleanup"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLBACK_COMPLETE = "rollback_complete"


class UpdateOutcome(Enum):
    """Final outcome of an update attempt."""
    UPDATED = "updated"
    ALREADY_CURRENT = "already_current"
    FAILED = "failed"


class BackupKind(Enum):
    """How a service's persistent state is captured."""
    VOLUME = "volume"  # tar.gz of the data directory
    DUMP = "dump"      # gzip'd logical SQL dump

    @property
    def extension(self) -> str:
        return "tar.gz" if self is BackupKind.VOLUME else "sql.gz"


@dataclass
class ServiceInstance:
    """
    A running deployment of a service, as reported by the container runtime.

    Never persisted - re-derived from live Docker state on every run.
    """
    container_id: str
    name: str
    image: str
    image_digest: str
    status: str = "running"

    @property
    def short_id(self) -> str:
        return self.container_id[:CONTAINER_ID_SHORT_LENGTH]

    @property
    def is_running(self) -> bool:
        return self.status == "running"


@dataclass(frozen=True)
class Backup:
    """
    Immutable, timestamped snapshot of a service's persistent data.

    The timestamp is encoded in the file name so the backup directory alone
    is enough to list and order backups.
    """
    service: str
    kind: BackupKind
    path: str
    created_at: datetime
    size_bytes: int

    @property
    def filename(self) -> str:
        return os.path.basename(self.path)

    @staticmethod
    def make_filename(service: str, kind: BackupKind, created_at: datetime) -> str:
        return f"{service}_backup_{created_at.strftime(BACKUP_TIMESTAMP_FORMAT)}.{kind.extension}"

    @classmethod
    def from_path(cls, path: str) -> Optional['Backup']:
        """
        Build a Backup from an existing file, or None if the name doesn't match.

        Timestamps in file names are UTC.
        """
        match = BACKUP_FILENAME_RE.match(os.path.basename(path))
        if not match:
            return None
        created_at = datetime.strptime(match.group('stamp'), BACKUP_TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
        kind = BackupKind.VOLUME if match.group('ext') == 'tar.gz' else BackupKind.DUMP
        try:
            size = os.path.getsize(path)
        except OSError:
            size = 0
        return cls(
            service=match.group('service'),
            kind=kind,
            path=path,
            created_at=created_at,
            size_bytes=size,
        )


@dataclass
class UpdateResult:
    """
    Result of an update attempt.

    Returned by the orchestrator so the workflow can record the outcome and
    print a summary.
    """
    outcome: UpdateOutcome
    previous_digest: Optional[str] = None
    new_digest: Optional[str] = None
    new_container_id: Optional[str] = None
    version: Optional[str] = None
    backup: Optional[Backup] = None
    reason: Optional[str] = None
    rolled_back: bool = False

    @property
    def success(self) -> bool:
        return self.outcome is not UpdateOutcome.FAILED

    @classmethod
    def already_current(cls, digest: str) -> 'UpdateResult':
        return cls(outcome=UpdateOutcome.ALREADY_CURRENT, previous_digest=digest, new_digest=digest)

    @classmethod
    def failure_result(cls, reason: str, rolled_back: bool = False, **kwargs) -> 'UpdateResult':
        """Create a failure result."""
        return cls(outcome=UpdateOutcome.FAILED, reason=reason, rolled_back=rolled_back, **kwargs)
