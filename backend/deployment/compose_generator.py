"""
Compose Generator for DockSteward

Renders the declarative service configuration to disk:
- docker-compose.yml describing image, ports, volumes and restart policy
- .env holding the container environment (and a few informational keys)

The files are derived state. They are regenerated on every run, so an
operator can always bring the service up by hand with `docker compose up -d`
from the service directory even without DockSteward.
"""

import logging
import os
import tempfile
from typing import Any, Dict, Optional

import yaml

from models.service_models import DesiredConfiguration

logger = logging.getLogger(__name__)

ENV_HEADER = "# Generated by DockSteward - edits are overwritten on the next run"


def generate_compose(desired: DesiredConfiguration) -> str:
    """
    Generate docker-compose.yml content for a desired configuration.

    Environment is referenced through env_file rather than inlined so
    secrets stay in the 0600 .env file.

    Args:
        desired: Target container configuration

    Returns:
        YAML string
    """
    service: Dict[str, Any] = {
        'image': desired.image,
        'container_name': desired.container_name,
        'restart': desired.restart_policy,
        'env_file': ['.env'],
    }

    if desired.ports:
        service['ports'] = [
            f"{p.host_port}:{p.container_port}" + ("/udp" if p.protocol == 'udp' else "")
            for p in desired.ports
        ]

    if desired.volumes:
        service['volumes'] = [
            f"{v.source}:{v.target}" + (":ro" if v.read_only else "")
            for v in desired.volumes
        ]

    if desired.labels:
        service['labels'] = dict(desired.labels)

    if desired.healthcheck:
        service['healthcheck'] = {
            'test': list(desired.healthcheck.test),
            'interval': f"{desired.healthcheck.interval_seconds}s",
            'timeout': f"{desired.healthcheck.timeout_seconds}s",
            'retries': desired.healthcheck.retries,
        }

    compose: Dict[str, Any] = {
        'services': {desired.service: service},
    }

    named_volumes = [v.source for v in desired.volumes if v.kind == 'volume']
    if named_volumes:
        # Volumes are created by DockSteward, compose must not prefix them with the project name
        compose['volumes'] = {name: {'external': True} for name in named_volumes}

    return yaml.dump(compose, default_flow_style=False, sort_keys=False)


def _quote_env_value(value: str) -> str:
    if value == '' or any(c in value for c in ' #"\'\t$'):
        escaped = value.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'
    return value


def render_env_file(environment: Dict[str, str], extras: Optional[Dict[str, str]] = None) -> str:
    """Render KEY=VALUE lines, container environment first, informational keys after"""
    lines = [ENV_HEADER]
    for key, value in environment.items():
        lines.append(f"{key}={_quote_env_value(str(value))}")
    if extras:
        lines.append("")
        lines.append("# Informational, not passed to the container")
        for key, value in extras.items():
            lines.append(f"{key}={_quote_env_value(str(value))}")
    return "\n".join(lines) + "\n"


def parse_env_file(content: str) -> Dict[str, str]:
    """
    Parse .env style content.

    Blank lines and comments are skipped, an optional leading `export ` is
    accepted and matching surrounding quotes are removed.
    """
    result: Dict[str, str] = {}
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith('#'):
            continue
        if line.startswith('export '):
            line = line[len('export '):].lstrip()
        if '=' not in line:
            logger.debug(f"Ignoring malformed .env line: {raw_line!r}")
            continue
        key, value = line.split('=', 1)
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            quote = value[0]
            value = value[1:-1]
            if quote == '"':
                value = value.replace('\\"', '"').replace('\\\\', '\\')
        result[key] = value
    return result


def read_env_file(path: str) -> Dict[str, str]:
    """Read a .env file, returning an empty dict when it doesn't exist"""
    if not os.path.exists(path):
        return {}
    with open(path, 'r', encoding='utf-8') as f:
        return parse_env_file(f.read())


def write_atomic(path: str, content: str, mode: int = 0o644) -> None:
    """Write a file via temp file + rename so readers never see a partial file"""
    directory = os.path.dirname(path) or '.'
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.tmp-', text=True)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def write_service_files(
    compose_path: str,
    env_path: str,
    desired: DesiredConfiguration,
    extras: Optional[Dict[str, str]] = None,
) -> bool:
    """
    Write docker-compose.yml and .env for a service.

    Returns:
        True if either file changed on disk
    """
    compose_content = generate_compose(desired)
    env_content = render_env_file(desired.environment, extras)

    changed = False
    for path, content, mode in (
        (compose_path, compose_content, 0o644),
        (env_path, env_content, 0o600),
    ):
        current = None
        if os.path.exists(path):
            with open(path, 'r', encoding='utf-8') as f:
                current = f.read()
        if current != content:
            write_atomic(path, content, mode)
            logger.info(f"Wrote {path}")
            changed = True
        else:
            logger.debug(f"{path} unchanged")
    return changed
