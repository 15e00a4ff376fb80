"""
Service Models for DockSteward
Pydantic models for service settings, desired container configuration and schedules
"""

import re
import logging
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


logger = logging.getLogger(__name__)

# Container names follow Docker's own rule
CONTAINER_NAME_PATTERN = r'^[a-zA-Z0-9][a-zA-Z0-9_.-]*$'

# Single crontab field: *, */n, n, n-m, n,m (and combinations)
CRON_FIELD_PATTERN = re.compile(r'^(\*|\d+(-\d+)?)(/\d+)?(,(\*|\d+(-\d+)?)(/\d+)?)*$')


class PortBinding(BaseModel):
    """Host port published to a container port"""
    host_port: int = Field(..., ge=1, le=65535)
    container_port: int = Field(..., ge=1, le=65535)
    protocol: Literal['tcp', 'udp'] = 'tcp'

    @property
    def container_key(self) -> str:
        """Key used by the Docker SDK ports mapping, e.g. '5678/tcp'"""
        return f"{self.container_port}/{self.protocol}"


class VolumeMount(BaseModel):
    """Bind mount (host path) or named volume mounted into the container"""
    source: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    kind: Literal['bind', 'volume'] = 'bind'
    read_only: bool = False

    @field_validator('target')
    @classmethod
    def validate_target(cls, v):
        """Container paths must be absolute"""
        if not v.startswith('/'):
            raise ValueError(f'Mount target must be an absolute path: {v}')
        return v


class HealthCheckSpec(BaseModel):
    """Docker HEALTHCHECK embedded in the generated container"""
    test: list[str]
    interval_seconds: int = 10
    timeout_seconds: int = 5
    retries: int = 5

    def to_docker(self) -> dict:
        """Docker SDK healthcheck dict (durations in nanoseconds)"""
        return {
            'test': self.test,
            'interval': self.interval_seconds * 1_000_000_000,
            'timeout': self.timeout_seconds * 1_000_000_000,
            'retries': self.retries,
        }


class DesiredConfiguration(BaseModel):
    """
    Declarative target state used to (re)create a service container.

    Regenerated on every run from settings plus the service profile, so
    overwriting previously generated files is always safe.
    """
    service: str = Field(..., min_length=1, max_length=64)
    image: str = Field(..., min_length=1, max_length=255)
    container_name: str = Field(..., min_length=1, max_length=128, pattern=CONTAINER_NAME_PATTERN)
    ports: list[PortBinding] = Field(default_factory=list)
    volumes: list[VolumeMount] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)
    restart_policy: Literal['no', 'always', 'unless-stopped', 'on-failure'] = 'always'
    labels: dict[str, str] = Field(default_factory=dict)
    healthcheck: Optional[HealthCheckSpec] = None
    # Path inside the container holding the persistent data
    data_path: str = Field(..., min_length=1)

    @model_validator(mode='after')
    def validate_unique_ports(self):
        """A host port can only be published once"""
        seen = set()
        for binding in self.ports:
            key = (binding.host_port, binding.protocol)
            if key in seen:
                raise ValueError(f'Host port {binding.host_port}/{binding.protocol} is published twice')
            seen.add(key)
        return self

    @property
    def image_repository(self) -> str:
        """Image reference without tag, e.g. 'n8nio/n8n'"""
        name = self.image.split('@', 1)[0]
        last_segment = name.rsplit('/', 1)[-1]
        if ':' in last_segment:
            return name[:name.rfind(':')]
        return name

    def with_host_port(self, container_port: int, host_port: int) -> 'DesiredConfiguration':
        """Return a copy with the host side of one binding moved"""
        ports = [
            binding.model_copy(update={'host_port': host_port})
            if binding.container_port == container_port else binding
            for binding in self.ports
        ]
        return self.model_copy(update={'ports': ports})


class N8nSettings(BaseModel):
    """Settings for the n8n workflow-automation service"""
    image: str = 'n8nio/n8n:latest'
    container_name: str = Field('n8n-app', pattern=CONTAINER_NAME_PATTERN)
    port: int = Field(5678, ge=1, le=65535)
    domain: Optional[str] = Field(None, max_length=253)
    protocol: Literal['http', 'https'] = 'http'
    timezone: Optional[str] = None

    @field_validator('domain')
    @classmethod
    def validate_domain(cls, v):
        """Bare host name, no scheme or path"""
        if v is None:
            return v
        v = v.strip().lower()
        if not v:
            return None
        if not re.match(r'^[a-z0-9]([a-z0-9-]*[a-z0-9])?(\.[a-z0-9]([a-z0-9-]*[a-z0-9])?)*$', v):
            raise ValueError(f'Invalid domain name: {v}')
        return v


class PostgresSettings(BaseModel):
    """Settings for the PostgreSQL service"""
    image: str = 'postgres:15-alpine'
    user: str
    password: str
    database: str
    port: int = Field(5432, ge=1, le=65535)
    # Move to the next free port when the requested one is taken
    allow_port_shift: bool = True

    @field_validator('user')
    @classmethod
    def validate_user(cls, v):
        """Must start with a letter, 3-32 chars, letters, digits and underscores"""
        if not re.match(r'^[a-zA-Z][a-zA-Z0-9_]{2,31}$', v):
            raise ValueError(
                'User must start with a letter, be 3-32 characters and contain only letters, digits and underscores'
            )
        return v

    @field_validator('password')
    @classmethod
    def validate_password(cls, v):
        """Minimum 8 characters"""
        if len(v) < 8:
            raise ValueError('Password must be at least 8 characters')
        return v

    @field_validator('database')
    @classmethod
    def validate_database(cls, v):
        """Must start with a letter, 3-64 chars, letters, digits and underscores"""
        if not re.match(r'^[a-zA-Z][a-zA-Z0-9_]{2,63}$', v):
            raise ValueError(
                'Database name must start with a letter, be 3-64 characters and contain only letters, digits and underscores'
            )
        return v

    @property
    def container_name(self) -> str:
        return f"postgres-{self.database}"


class ScheduleSpec(BaseModel):
    """Crontab timing fields plus the command to run"""
    minute: str = '0'
    hour: str = '4'
    day_of_month: str = '*/3'
    month: str = '*'
    day_of_week: str = '*'
    command: str = Field(..., min_length=1)

    @field_validator('minute', 'hour', 'day_of_month', 'month', 'day_of_week')
    @classmethod
    def validate_cron_field(cls, v):
        """Reject anything that is not a plain crontab field"""
        v = v.strip()
        if not CRON_FIELD_PATTERN.match(v):
            raise ValueError(f'Invalid crontab field: {v!r}')
        return v

    @field_validator('command')
    @classmethod
    def validate_command(cls, v):
        """One line only - a newline would smuggle in a second crontab entry"""
        if '\n' in v or '\r' in v:
            raise ValueError('Scheduled command must be a single line')
        return v.strip()

    @property
    def expression(self) -> str:
        return f"{self.minute} {self.hour} {self.day_of_month} {self.month} {self.day_of_week}"

    def to_cron_line(self, marker: str) -> str:
        """Crontab line tagged with the marker comment"""
        return f"{self.expression} {self.command} # {marker}"
