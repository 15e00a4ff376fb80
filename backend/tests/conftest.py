"""
Shared pytest fixtures for DockSteward tests.

Fixtures provided:
- test_db: DatabaseManager on a temporary SQLite file
- mock_docker_client: Mock Docker SDK client
- mock_container: A running service container as the Docker SDK returns it
- backup_dir: Empty per-test backup directory
- n8n_desired / postgres_desired: Desired configurations built by the real profiles

Note: no test talks to a Docker daemon. Every SDK call goes through
MagicMock objects, and async_docker_call still runs them in a thread.
"""

import pytest
import tempfile
import os
from unittest.mock import MagicMock

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from database import DatabaseManager
from deployment.profiles import N8nProfile, PostgresProfile
from models.service_models import N8nSettings, PostgresSettings


OLD_DIGEST = "sha256:" + "a" * 64
NEW_DIGEST = "sha256:" + "b" * 64


@pytest.fixture(scope="function")
def test_db():
    """
    Create a temporary SQLite database for testing.

    Yields a DatabaseManager; the file is removed afterwards so tests
    don't affect each other.
    """
    db_fd, db_path = tempfile.mkstemp(suffix='.db')
    os.close(db_fd)
    manager = DatabaseManager(db_path)

    yield manager

    manager.engine.dispose()
    os.unlink(db_path)


def make_container(
    name: str = "n8n-app",
    container_id: str = "abc123def456789012345678901234567890123456789012345678901234",
    image: str = "n8nio/n8n:latest",
    image_digest: str = OLD_DIGEST,
    status: str = "running",
):
    """Mock Docker SDK container with the attributes DockSteward reads"""
    container = MagicMock()
    container.id = container_id
    container.short_id = container_id[:12]
    container.name = name
    container.status = status
    container.attrs = {
        'Image': image_digest,
        'State': {'Status': status, 'Running': status == 'running'},
        'Config': {'Image': image, 'Labels': {'docksteward.service': 'n8n'}},
        'NetworkSettings': {'Ports': {'5678/tcp': [{'HostIp': '0.0.0.0', 'HostPort': '5678'}]}},
    }
    return container


@pytest.fixture
def mock_container():
    return make_container()


@pytest.fixture
def mock_docker_client(mock_container):
    """
    Mock Docker SDK client for testing without real Docker daemon.

    Returns a MagicMock with common Docker SDK methods stubbed.
    """
    client = MagicMock()
    client.containers.list = MagicMock(return_value=[])
    client.containers.get = MagicMock(return_value=mock_container)
    client.ping = MagicMock(return_value=True)
    return client


@pytest.fixture
def backup_dir(tmp_path):
    path = tmp_path / "backups" / "n8n"
    path.mkdir(parents=True)
    return str(path)


@pytest.fixture
def n8n_profile(tmp_path):
    return N8nProfile(str(tmp_path / "services" / "n8n"), N8nSettings())


@pytest.fixture
def n8n_desired(n8n_profile):
    return n8n_profile.build_desired(n8n_profile.build_environment({}))


@pytest.fixture
def postgres_profile(tmp_path):
    settings = PostgresSettings(user="app_user", password="s3cretpass", database="appdb")
    return PostgresProfile(str(tmp_path / "services" / "postgres"), settings)


@pytest.fixture
def postgres_desired(postgres_profile):
    return postgres_profile.build_desired(postgres_profile.build_environment({}))


@pytest.fixture
def container_builder():
    """The make_container() helper, for tests that need several containers"""
    return make_container


@pytest.fixture
def digests():
    return {'old': OLD_DIGEST, 'new': NEW_DIGEST}
