"""
Configuration Management for DockSteward
Centralizes all environment-based configuration and settings
"""

import os
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional


class DockerNoiseFilter(logging.Filter):
    """Filter out per-request debug chatter from the Docker SDK and urllib3"""
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno > logging.DEBUG:
            return True
        return not record.name.startswith(('urllib3', 'docker.utils', 'httpx', 'httpcore'))


def setup_logging(level: str = 'INFO', log_dir: Optional[str] = None):
    """Configure application logging with rotation"""
    if log_dir is None:
        from .paths import LOG_DIR
        log_dir = LOG_DIR

    os.makedirs(log_dir, mode=0o700, exist_ok=True)

    root_logger = logging.getLogger()

    # Close and clear any existing handlers so repeated calls don't leak file descriptors
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(numeric_level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(DockerNoiseFilter())

    # Max 10MB per file, keep 14 backups
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'docksteward.log'),
        maxBytes=10*1024*1024,
        backupCount=14,
        encoding='utf-8'
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(DockerNoiseFilter())

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)


# Unparseable integer variables, reported by AppConfig.validate()
_ENV_ERRORS = []


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        _ENV_ERRORS.append(f"{name} must be an integer, got {value!r}")
        return default


class AppConfig:
    """Main application configuration"""

    # Docker daemon (empty = docker.from_env() defaults / DOCKER_HOST)
    DOCKER_URL = os.getenv('DOCKSTEWARD_DOCKER_URL', '')
    DOCKER_TIMEOUT = _env_int('DOCKSTEWARD_DOCKER_TIMEOUT', 120)

    # Logging
    LOG_LEVEL = os.getenv('DOCKSTEWARD_LOG_LEVEL', 'INFO')

    # Health verification after (re)creating a container
    HEALTH_CHECK_TIMEOUT = _env_int('DOCKSTEWARD_HEALTH_CHECK_TIMEOUT', 60)
    HEALTH_CHECK_INTERVAL = _env_int('DOCKSTEWARD_HEALTH_CHECK_INTERVAL', 2)

    # Backup retention horizon in days
    BACKUP_RETENTION_DAYS = _env_int('DOCKSTEWARD_BACKUP_RETENTION_DAYS', 7)

    # Image pull timeout (seconds)
    PULL_TIMEOUT = _env_int('DOCKSTEWARD_PULL_TIMEOUT', 1800)

    # Scheduler defaults: every 3 days at 04:00
    SCHEDULE_MINUTE = os.getenv('DOCKSTEWARD_SCHEDULE_MINUTE', '0')
    SCHEDULE_HOUR = os.getenv('DOCKSTEWARD_SCHEDULE_HOUR', '4')
    SCHEDULE_DAY_OF_MONTH = os.getenv('DOCKSTEWARD_SCHEDULE_DAY_OF_MONTH', '*/3')

    ENV_ERRORS = _ENV_ERRORS

    @classmethod
    def validate(cls):
        """Validate configuration"""
        if cls.ENV_ERRORS:
            raise ValueError("; ".join(cls.ENV_ERRORS))

        if cls.HEALTH_CHECK_TIMEOUT < 1:
            raise ValueError(f"Health check timeout must be at least 1 second: {cls.HEALTH_CHECK_TIMEOUT}")

        if cls.HEALTH_CHECK_INTERVAL < 1 or cls.HEALTH_CHECK_INTERVAL > cls.HEALTH_CHECK_TIMEOUT:
            raise ValueError(f"Invalid health check interval: {cls.HEALTH_CHECK_INTERVAL}")

        if cls.BACKUP_RETENTION_DAYS < 1:
            raise ValueError(f"Backup retention must be at least 1 day: {cls.BACKUP_RETENTION_DAYS}")

        if cls.LOG_LEVEL.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f"Invalid log level: {cls.LOG_LEVEL}")

        return True
