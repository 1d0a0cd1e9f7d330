"""
Backup module for cycler.

This module handles storing backup artifacts and cycling them:
- Artifact naming (single file or chunks)
- Transfer adapters (SCP, S3 and local)
- Retention ledger persistence
- Cycling (keep N) enforcement
- Execution orchestration
"""

from .artifact import ArtifactDescriptor, generate_timestamp
from .storage import (
    StorageConfiguration,
    SCPStorage,
    S3Storage,
    LocalStorage,
    create_storage,
    register_storage
)
from .ledger import RetentionLedger, LedgerEntry
from .retention import CyclingEngine
from .executor import BackupExecutor, BackupModel, execute_backup_model
from .finder import Finder

__all__ = [
    'ArtifactDescriptor',
    'generate_timestamp',
    'StorageConfiguration',
    'SCPStorage',
    'S3Storage',
    'LocalStorage',
    'create_storage',
    'register_storage',
    'RetentionLedger',
    'LedgerEntry',
    'CyclingEngine',
    'BackupExecutor',
    'BackupModel',
    'execute_backup_model',
    'Finder'
]
