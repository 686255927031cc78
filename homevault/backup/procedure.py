"""
Backup procedure - creates one backup volume and records it in the storage.

Workflow:
1. Capture the backup time (UTC)
2. Create a scratch directory
3. Write the volume with all files of the scope
4. Store the volume, update the last-backup manifest, apply retention
   (skipped if the volume is empty)
5. Update the existing files metadata and the version marker
6. Cleanup the scratch directory
"""

import logging
import os
import shutil
import tempfile
from datetime import datetime, timezone
from typing import Optional, Set

from .retention import BackupHistory
from .scope import Scope
from .storage import Storage
from .version import get_file_system_version
from .volume import Volume

logger = logging.getLogger(__name__)

BACKUP_NAME_PREFIX = 'backup-'
TIMESTAMP_FORMAT = '%Y%m%d%H%M%S'


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_backup_filename(backup_time: datetime, extension: str, suffix: Optional[str] = None) -> str:
    """
    Generate the volume filename for a backup.

    Args:
        backup_time: Time of the backup
        extension: Volume file extension without the dot
        suffix: Optional suffix, e.g. '-incremental'

    Returns:
        Filename like 'backup-20241205143022-incremental.zip'
    """
    return f"{BACKUP_NAME_PREFIX}{backup_time.strftime(TIMESTAMP_FORMAT)}{suffix or ''}.{extension}"


class BackupProcedure:
    """
    Creates a backup of the home directory.

    The collaborators decide what kind of backup is created: a full backup
    uses the plain scope and storage, an incremental backup wraps them in
    IncrementalScope and IncrementalBackupStorage.
    """

    def __init__(self, volume: Volume, scope: Scope, storage: Storage, backup_history: BackupHistory,
                 root: str, temp_dir: Optional[str] = None, backup_name_suffix: Optional[str] = None):
        """
        Initialize backup procedure.

        Args:
            volume: Container format of the backup
            scope: Files to back up
            storage: Storage the volume is stored in
            backup_history: Retention policy applied after storing
            root: Home directory
            temp_dir: Parent of the scratch directory (system default if None)
            backup_name_suffix: Suffix of the volume name
        """
        self.volume = volume
        self.scope = scope
        self.storage = storage
        self.backup_history = backup_history
        self.root = root
        self.temp_dir = temp_dir
        self.backup_name_suffix = backup_name_suffix

    def perform_backup(self) -> datetime:
        """
        Perform the backup.

        Returns:
            The time of the backup, used as cutoff for the next incremental backup

        Raises:
            OSError: If creating or storing the volume fails
        """
        backup_time = _utcnow()

        if self.temp_dir:
            os.makedirs(self.temp_dir, exist_ok=True)
        scratch_dir = tempfile.mkdtemp(prefix='homevault-backup-', dir=self.temp_dir)

        try:
            filename = generate_backup_filename(
                backup_time, self.volume.file_extension, self.backup_name_suffix
            )
            volume_path = os.path.join(scratch_dir, filename)
            existing_names: Set[str] = set()

            logger.info(f"Creating backup volume: {filename}")
            with self.volume.create_new(volume_path) as creator:
                self.scope.add_files(self.root, creator, existing_names)
                file_count = creator.file_count

            if file_count > 0:
                logger.info(f"Storing backup {filename} with {file_count} file(s)")
                self.storage.store_file(volume_path, filename)
                self.storage.update_last_backup([filename])
                self.backup_history.process_historic_backups(self.storage, filename)
            else:
                logger.info("No files changed, backup volume is not stored")

            # after retention, which may delete files from the storage
            self.storage.update_existing_files_metadata(existing_names)
            self.storage.update_version_info(get_file_system_version(self.root))

            logger.info(f"Backup complete: {filename}")
            return backup_time

        finally:
            self._cleanup(scratch_dir)

    def _cleanup(self, scratch_dir: str):
        """Remove the scratch directory, failures are only logged."""
        try:
            shutil.rmtree(scratch_dir)
        except OSError as e:
            logger.warning(f"Failed to cleanup scratch directory {scratch_dir}: {e}")
