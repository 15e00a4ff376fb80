"""
Updates Module

Service update, backup and restore.

Architecture:
- EnvironmentProbe: finds the running instance of a service
- BackupManager: tar archives (n8n) or SQL dumps (postgres) of persistent state
- UpdateOrchestrator: pull, backup, replace, verify, roll back
- RestoreManager: bring a service back from its latest backup, or install it fresh
- ProvisioningWorkflow: ties the above together for one CLI invocation
"""

from updates.errors import StewardError
from updates.types import Backup, BackupKind, ServiceInstance, UpdateOutcome, UpdateResult, UpdateStage

__all__ = [
    'StewardError',
    'Backup',
    'BackupKind',
    'ServiceInstance',
    'UpdateOutcome',
    'UpdateResult',
    'UpdateStage',
]
