"""
Service profiles for DockSteward

A profile holds everything that differs between the managed services:
image, container layout, generated environment, how persistent state is
backed up, and how a fresh instance proves it is healthy.

Supported services:
    - n8n: workflow automation, data directory backed up as a tar archive
    - postgres: PostgreSQL, database backed up as a logical SQL dump
"""

import logging
import os
import secrets
import socket
from typing import Dict, List, Optional

from models.service_models import (
    DesiredConfiguration,
    HealthCheckSpec,
    N8nSettings,
    PortBinding,
    PostgresSettings,
    VolumeMount,
)
from updates.types import BackupKind

logger = logging.getLogger(__name__)

# Label stamped on every container DockSteward creates
MANAGED_LABEL = 'docksteward.service'

# Container user the official n8n image runs as
N8N_UID = 1000
N8N_GID = 1000


def _server_ip() -> str:
    """Best-effort primary IP of this host for connection hints"""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            # No packets are sent for a UDP connect
            s.connect(('10.255.255.255', 1))
            return s.getsockname()[0]
    except OSError:
        return 'localhost'


class ServiceProfile:
    """Base class for a managed service"""

    name: str = ''
    backup_kind: BackupKind = BackupKind.VOLUME
    # Only the first published port is probed for conflicts
    allow_port_shift: bool = False
    # Accept an unlabeled container from the same image as the instance
    adopt_unlabeled: bool = False

    def __init__(self, service_dir: str):
        self.service_dir = service_dir

    @property
    def compose_path(self) -> str:
        return os.path.join(self.service_dir, 'docker-compose.yml')

    @property
    def env_path(self) -> str:
        return os.path.join(self.service_dir, '.env')

    @property
    def schedule_marker(self) -> str:
        return f"docksteward-{self.name}-auto-update"

    def build_environment(self, existing: Dict[str, str]) -> Dict[str, str]:
        """Environment for the container; existing values from .env win for generated secrets"""
        raise NotImplementedError

    def build_desired(self, environment: Dict[str, str]) -> DesiredConfiguration:
        raise NotImplementedError

    def env_file_extras(self, desired: DesiredConfiguration) -> Dict[str, str]:
        """Informational keys written to .env but not passed to the container"""
        return {}

    def prepare_host(self, desired: DesiredConfiguration) -> None:
        """Create host directories the container mounts"""
        for mount in desired.volumes:
            if mount.kind == 'bind':
                os.makedirs(mount.source, exist_ok=True)

    def version_command(self, desired: DesiredConfiguration) -> List[str]:
        raise NotImplementedError

    def readiness_command(self, desired: DesiredConfiguration) -> Optional[List[str]]:
        """Command that exits 0 once the service accepts work, if any"""
        return None

    def health_url(self, desired: DesiredConfiguration) -> Optional[str]:
        return None

    def connection_info(self, desired: DesiredConfiguration) -> List[str]:
        return []

    def base_labels(self) -> Dict[str, str]:
        return {MANAGED_LABEL: self.name}


class N8nProfile(ServiceProfile):
    """n8n workflow automation"""

    name = 'n8n'
    backup_kind = BackupKind.VOLUME
    allow_port_shift = False
    adopt_unlabeled = True

    DATA_PATH = '/home/node/.n8n'
    CONTAINER_PORT = 5678

    def __init__(self, service_dir: str, settings: N8nSettings):
        super().__init__(service_dir)
        self.settings = settings

    @property
    def data_dir(self) -> str:
        return os.path.join(self.service_dir, 'data')

    def build_environment(self, existing: Dict[str, str]) -> Dict[str, str]:
        s = self.settings
        host = s.domain or 'localhost'
        if s.domain:
            webhook_url = f"{s.protocol}://{s.domain}/"
        else:
            webhook_url = f"{s.protocol}://localhost:{s.port}/"

        env = {
            'N8N_HOST': host,
            'N8N_PORT': str(self.CONTAINER_PORT),
            'N8N_PROTOCOL': s.protocol,
            'WEBHOOK_URL': webhook_url,
            'N8N_DIAGNOSTICS_ENABLED': 'false',
            'N8N_SKIP_WEBHOOK_DEREGISTRATION_SHUTDOWN': 'true',
            # Regenerating this key would make stored credentials unreadable
            'N8N_ENCRYPTION_KEY': existing.get('N8N_ENCRYPTION_KEY') or secrets.token_hex(32),
        }
        if s.timezone:
            env['GENERIC_TIMEZONE'] = s.timezone
            env['TZ'] = s.timezone
        return env

    def build_desired(self, environment: Dict[str, str]) -> DesiredConfiguration:
        return DesiredConfiguration(
            service=self.name,
            image=self.settings.image,
            container_name=self.settings.container_name,
            ports=[PortBinding(host_port=self.settings.port, container_port=self.CONTAINER_PORT)],
            volumes=[VolumeMount(source=self.data_dir, target=self.DATA_PATH, kind='bind')],
            environment=environment,
            restart_policy='always',
            labels=self.base_labels(),
            data_path=self.DATA_PATH,
        )

    def prepare_host(self, desired: DesiredConfiguration) -> None:
        super().prepare_host(desired)
        try:
            os.chown(self.data_dir, N8N_UID, N8N_GID)
        except PermissionError:
            logger.warning(f"Could not chown {self.data_dir} to {N8N_UID}:{N8N_GID}; n8n may fail to write its data")

    def version_command(self, desired: DesiredConfiguration) -> List[str]:
        return ['n8n', '--version']

    def health_url(self, desired: DesiredConfiguration) -> Optional[str]:
        return f"http://127.0.0.1:{desired.ports[0].host_port}/healthz"

    def connection_info(self, desired: DesiredConfiguration) -> List[str]:
        port = desired.ports[0].host_port
        lines = [f"Local URL:   http://localhost:{port}"]
        if self.settings.domain:
            lines.append(f"Public URL:  {self.settings.protocol}://{self.settings.domain}/")
        lines.append(f"Data dir:    {self.data_dir}")
        return lines


class PostgresProfile(ServiceProfile):
    """PostgreSQL database"""

    name = 'postgres'
    backup_kind = BackupKind.DUMP
    allow_port_shift = True

    DATA_PATH = '/var/lib/postgresql/data'
    INIT_PATH = '/docker-entrypoint-initdb.d'
    CONTAINER_PORT = 5432
    INITDB_ARGS = '--encoding=UTF-8 --lc-collate=C --lc-ctype=C'

    INIT_SQL = (
        "-- Executed once when the data directory is initialised\n"
        'CREATE EXTENSION IF NOT EXISTS "uuid-ossp";\n'
        'CREATE EXTENSION IF NOT EXISTS "pg_trgm";\n'
    )

    def __init__(self, service_dir: str, settings: PostgresSettings):
        super().__init__(service_dir)
        self.settings = settings
        self.allow_port_shift = settings.allow_port_shift

    @property
    def init_dir(self) -> str:
        return os.path.join(self.service_dir, 'init-scripts')

    @property
    def volume_name(self) -> str:
        return f"{self.settings.container_name}-data"

    def build_environment(self, existing: Dict[str, str]) -> Dict[str, str]:
        return {
            'POSTGRES_USER': self.settings.user,
            'POSTGRES_PASSWORD': self.settings.password,
            'POSTGRES_DB': self.settings.database,
            'POSTGRES_INITDB_ARGS': self.INITDB_ARGS,
        }

    def build_desired(self, environment: Dict[str, str]) -> DesiredConfiguration:
        s = self.settings
        return DesiredConfiguration(
            service=self.name,
            image=s.image,
            container_name=s.container_name,
            ports=[PortBinding(host_port=s.port, container_port=self.CONTAINER_PORT)],
            volumes=[
                VolumeMount(source=self.volume_name, target=self.DATA_PATH, kind='volume'),
                VolumeMount(source=self.init_dir, target=self.INIT_PATH, kind='bind', read_only=True),
            ],
            environment=environment,
            restart_policy='unless-stopped',
            labels=self.base_labels(),
            healthcheck=HealthCheckSpec(
                test=['CMD-SHELL', f"pg_isready -h 127.0.0.1 -U {s.user} -d {s.database}"],
                interval_seconds=10,
                timeout_seconds=5,
                retries=5,
            ),
            data_path=self.DATA_PATH,
        )

    def env_file_extras(self, desired: DesiredConfiguration) -> Dict[str, str]:
        return {
            'POSTGRES_PORT': str(desired.ports[0].host_port),
            'CONTAINER_NAME': desired.container_name,
            'PROJECT_DIR': self.service_dir,
        }

    def prepare_host(self, desired: DesiredConfiguration) -> None:
        super().prepare_host(desired)
        init_file = os.path.join(self.init_dir, '01-extensions.sql')
        if not os.path.exists(init_file):
            with open(init_file, 'w', encoding='utf-8') as f:
                f.write(self.INIT_SQL)

    def version_command(self, desired: DesiredConfiguration) -> List[str]:
        return ['postgres', '--version']

    def readiness_command(self, desired: DesiredConfiguration) -> Optional[List[str]]:
        # Over TCP: the entrypoint's temporary init server listens on the unix socket only
        return ['pg_isready', '-h', '127.0.0.1', '-U', self.settings.user, '-d', self.settings.database]

    def connection_info(self, desired: DesiredConfiguration) -> List[str]:
        s = self.settings
        port = desired.ports[0].host_port
        server_ip = _server_ip()
        return [
            f"From this host:   psql -h localhost -U {s.user} -d {s.database} -p {port}",
            f"From the network: psql -h {server_ip} -U {s.user} -d {s.database} -p {port}",
            f"Connection URL:   postgresql://{s.user}:<password>@{server_ip}:{port}/{s.database}",
            f"Inside container: docker exec -it {desired.container_name} psql -U {s.user} -d {s.database}",
        ]


def build_profile(service: str, service_dir: str, settings) -> ServiceProfile:
    """Return the profile for a service name"""
    if service == 'n8n':
        return N8nProfile(service_dir, settings)
    if service == 'postgres':
        return PostgresProfile(service_dir, settings)
    raise ValueError(f"Unknown service: {service}")
