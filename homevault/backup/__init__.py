"""
Backup module for HomeVault.

This module handles the core backup functionality including:
- Volumes (zip and tar containers)
- Scopes (which files are backed up, and under which names)
- Storage (local directory and S3)
- Backup and restore procedures
- Retention policies and backup triggers
"""

from .volume import Volume, VolumeError, VolumeStateError, create_volume
from .scope import (
    CustomScope,
    DefaultBackupScope,
    ExistingFileMetadata,
    FilteringScope,
    IncrementalScope,
    MultiScope,
)
from .storage import (
    IncrementalBackupStorage,
    LocalFileStorage,
    S3Storage,
    StorageError,
    create_storage,
)
from .retention import KeepAllBackupHistory, KeepLatestBackupHistory
from .procedure import BackupProcedure
from .restore import RestoreProcedure
from .initiation import NewEnvironmentOnlyStrategy, RestartAfterRestoreStrategy, RestoreLog

__all__ = [
    'Volume',
    'VolumeError',
    'VolumeStateError',
    'create_volume',
    'CustomScope',
    'DefaultBackupScope',
    'ExistingFileMetadata',
    'FilteringScope',
    'IncrementalScope',
    'MultiScope',
    'IncrementalBackupStorage',
    'LocalFileStorage',
    'S3Storage',
    'StorageError',
    'create_storage',
    'KeepAllBackupHistory',
    'KeepLatestBackupHistory',
    'BackupProcedure',
    'RestoreProcedure',
    'NewEnvironmentOnlyStrategy',
    'RestartAfterRestoreStrategy',
    'RestoreLog',
]
