"""
Crontab-based scheduler registration.

Each managed job is a single crontab line ending in a marker comment
(`# docksteward-n8n-auto-update`). Registration checks for the marker
before appending, so running the provisioning workflow repeatedly never
produces duplicate entries. Existing entries are never rewritten or removed.
"""

import logging
import subprocess
from typing import Callable, List, Optional

from models.service_models import ScheduleSpec
from updates.errors import PermissionDenied, SchedulerError

logger = logging.getLogger(__name__)

# `crontab -l` prints this (exit 1) for users without a crontab
NO_CRONTAB_MESSAGES = ('no crontab for', 'no crontab')


class CrontabScheduler:
    """
    Reads and appends to the invoking user's crontab via the crontab binary.
    """

    def __init__(
        self,
        crontab_cmd: str = 'crontab',
        user: Optional[str] = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        timeout: int = 30,
    ):
        """
        Args:
            crontab_cmd: Path/name of the crontab binary
            user: Edit another user's crontab (crontab -u, needs root)
            runner: subprocess.run compatible callable
            timeout: Seconds before a crontab call is abandoned
        """
        self.crontab_cmd = crontab_cmd
        self.user = user
        self.runner = runner
        self.timeout = timeout

    def _base_cmd(self) -> List[str]:
        cmd = [self.crontab_cmd]
        if self.user:
            cmd += ['-u', self.user]
        return cmd

    def _run(self, args: List[str], input_text: Optional[str] = None) -> subprocess.CompletedProcess:
        try:
            return self.runner(
                self._base_cmd() + args,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            raise SchedulerError(f"'{self.crontab_cmd}' not found. Install cron to enable scheduled updates")
        except subprocess.TimeoutExpired:
            raise SchedulerError(f"'{self.crontab_cmd}' timed out after {self.timeout}s")

    def read_entries(self) -> List[str]:
        """Current crontab lines; a user without a crontab has none"""
        result = self._run(['-l'])
        if result.returncode != 0:
            stderr = (result.stderr or '').strip()
            if any(msg in stderr.lower() for msg in NO_CRONTAB_MESSAGES):
                return []
            if 'permission denied' in stderr.lower() or 'not allowed' in stderr.lower():
                raise PermissionDenied(f"Not allowed to read crontab: {stderr}")
            raise SchedulerError(f"crontab -l failed ({result.returncode}): {stderr}")
        return (result.stdout or '').splitlines()

    def write_entries(self, lines: List[str]) -> None:
        """Install lines as the complete crontab"""
        content = "\n".join(lines) + "\n"
        result = self._run(['-'], input_text=content)
        if result.returncode != 0:
            stderr = (result.stderr or '').strip()
            if 'permission denied' in stderr.lower() or 'not allowed' in stderr.lower():
                raise PermissionDenied(f"Not allowed to write crontab: {stderr}")
            raise SchedulerError(f"Installing crontab failed ({result.returncode}): {stderr}")

    @staticmethod
    def _has_marker(lines: List[str], marker: str) -> bool:
        tag = f"# {marker}"
        return any(line.rstrip().endswith(tag) for line in lines)

    def is_scheduled(self, marker: str) -> bool:
        return self._has_marker(self.read_entries(), marker)

    def ensure_scheduled(self, marker: str, spec: ScheduleSpec) -> bool:
        """
        Register spec under marker unless an entry with marker already exists.

        Returns:
            True if a new entry was added, False if one was already present
        """
        if not marker or any(c in marker for c in '\n#'):
            raise ValueError(f"Invalid schedule marker: {marker!r}")

        lines = self.read_entries()
        if self._has_marker(lines, marker):
            logger.info(f"Schedule '{marker}' already registered")
            return False

        line = spec.to_cron_line(marker)
        self.write_entries(lines + [line])
        logger.info(f"Registered schedule '{marker}': {spec.expression}")
        return True
