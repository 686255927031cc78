"""
Retention policies applied to the storage after a backup.

A history policy runs right after a new volume was stored and may delete
older volumes. Bookkeeping files are never listed, so they are never
deleted here.
"""

import logging
from abc import ABC, abstractmethod
from typing import List

from .storage import Storage, StorageError

logger = logging.getLogger(__name__)


class BackupHistory(ABC):
    """Post-backup retention hook."""

    @abstractmethod
    def process_historic_backups(self, storage: Storage, latest_backup_name: str) -> List[str]:
        """
        Apply the retention policy.

        Args:
            storage: Storage holding the backups
            latest_backup_name: Name of the volume that was just stored

        Returns:
            Names of the deleted files
        """


class KeepLatestBackupHistory(BackupHistory):
    """Deletes every stored file except the latest backup."""

    def process_historic_backups(self, storage: Storage, latest_backup_name: str) -> List[str]:
        deleted = []

        for filename in storage.list_files():
            if filename == latest_backup_name:
                continue
            logger.info(f"Deleting historic backup: {filename}")
            try:
                storage.delete_file(filename)
                deleted.append(filename)
            except StorageError as e:
                # a leftover volume is harmless, it is retried after the next backup
                logger.warning(f"Failed to delete historic backup {filename}: {e}")

        logger.info(f"Retention complete, deleted {len(deleted)} historic backup(s)")
        return deleted


class KeepAllBackupHistory(BackupHistory):
    """Keeps every backup, used while an incremental chain is open."""

    def process_historic_backups(self, storage: Storage, latest_backup_name: str) -> List[str]:
        return []
