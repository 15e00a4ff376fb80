"""
Error taxonomy for provisioning, backup, update and restore operations.

Every error raised deliberately by DockSteward derives from StewardError so
the CLI can log it, record the run outcome and exit with status 1.
"""

from typing import Optional


class StewardError(Exception):
    """Base class for unrecoverable DockSteward failures."""

    def __init__(self, message: str, service: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.service = service


class ConfigurationError(StewardError):
    """Settings are missing or invalid."""

    pass


class RuntimeUnavailable(StewardError):
    """The Docker daemon cannot be reached."""

    pass


class PullFailed(StewardError):
    """The registry refused or failed an image pull."""

    pass


class BackupFailed(StewardError):
    """A backup could not be produced."""

    pass


class CorruptBackup(StewardError):
    """A backup archive exists but cannot be read back."""

    def __init__(self, message: str, path: str, service: Optional[str] = None):
        super().__init__(message, service=service)
        self.path = path


class VerificationTimeout(StewardError):
    """A (re)created instance did not report healthy in time."""

    def __init__(self, message: str, timeout: int, service: Optional[str] = None):
        super().__init__(message, service=service)
        self.timeout = timeout


class PortConflict(StewardError):
    """A required host port is already bound by another process."""

    def __init__(self, message: str, port: int, service: Optional[str] = None):
        super().__init__(message, service=service)
        self.port = port


class PermissionDenied(StewardError):
    """The process lacks access to the Docker socket or a state directory."""

    pass


class Busy(StewardError):
    """Another run holds the exclusive run lock."""

    pass


class VerificationFailed(StewardError):
    """A (re)created instance crashed, reported unhealthy or gave no version."""

    pass


class SchedulerError(StewardError):
    """The periodic scheduler (crontab) could not be read or written."""

    pass
