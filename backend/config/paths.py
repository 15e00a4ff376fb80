"""
Centralized path configuration for DockSteward
Ensures all modules use consistent paths for state, backups and logs
"""

import os

# Base paths - absolute on a provisioned host
DATA_DIR = os.getenv('DOCKSTEWARD_DATA_DIR', '/var/lib/docksteward')

# Service directories (docker-compose.yml + .env per service) live here
SERVICES_DIR = os.getenv('DOCKSTEWARD_SERVICES_DIR', os.path.join(DATA_DIR, 'services'))

# Backups are kept per service under this root
BACKUP_ROOT = os.getenv('DOCKSTEWARD_BACKUP_DIR', os.path.join(DATA_DIR, 'backups'))

# Run history database
DATABASE_PATH = os.path.join(DATA_DIR, 'docksteward.db')
DATABASE_URL = f'sqlite:///{DATABASE_PATH}'

# Exclusive run lock
LOCK_FILE = os.path.join(DATA_DIR, 'docksteward.lock')

LOG_DIR = os.path.join(DATA_DIR, 'logs')


def ensure_data_dirs():
    """Create data directories if they don't exist"""
    for directory in [DATA_DIR, SERVICES_DIR, BACKUP_ROOT, LOG_DIR]:
        os.makedirs(directory, exist_ok=True)
        try:
            os.chmod(directory, 0o700)
        except OSError:
            pass  # May not own the directory


# For development/testing on a machine that is not the provisioned host
if 'DOCKSTEWARD_DATA_DIR' not in os.environ and not os.access('/var/lib', os.W_OK):
    DATA_DIR = './data'
    SERVICES_DIR = os.getenv('DOCKSTEWARD_SERVICES_DIR', os.path.join(DATA_DIR, 'services'))
    BACKUP_ROOT = os.getenv('DOCKSTEWARD_BACKUP_DIR', os.path.join(DATA_DIR, 'backups'))
    DATABASE_PATH = os.path.join(DATA_DIR, 'docksteward.db')
    DATABASE_URL = f'sqlite:///{DATABASE_PATH}'
    LOCK_FILE = os.path.join(DATA_DIR, 'docksteward.lock')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
