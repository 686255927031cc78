"""
Restore procedure - replays the latest backup chain into the home directory.

The last-backup manifest lists one full backup followed by any number of
incremental backups, oldest first. All volumes are fetched concurrently,
but extracted strictly in manifest order: the task of every volume waits
for the task of the preceding volume to finish extracting before it
extracts its own volume. The first failure stops the chain.
"""

import logging
import os
import shutil
import tempfile
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import List, Optional

from .initiation import InitiationStrategy
from .scope import ExistingFileMetadata, Scope
from .storage import Storage
from .volume import Volume

logger = logging.getLogger(__name__)

TMP_DIR_PREFIX = 'homevault-restore-'


class RestoreProcedure:
    """Restores the latest backup from the storage."""

    def __init__(self, volume: Volume, scope: Scope, storage: Optional[Storage],
                 initiation_strategy: InitiationStrategy, root: str,
                 scratch_dir: Optional[str] = None, overwrite: bool = False, max_workers: int = 4):
        """
        Initialize restore procedure.

        Args:
            volume: Container format of the backups
            scope: Scope the backups were created with
            storage: Storage to restore from, None if no storage is configured
            initiation_strategy: Hooks run after the restore
            root: Home directory
            scratch_dir: Parent of the temporary download directory
            overwrite: Whether files already present in root are replaced
            max_workers: Number of volumes fetched concurrently
        """
        self.volume = volume
        self.scope = scope
        self.storage = storage
        self.initiation_strategy = initiation_strategy
        self.root = root
        self.scratch_dir = scratch_dir
        self.overwrite = overwrite
        self.max_workers = max(1, max_workers)

    def perform_restore(self):
        """
        Perform the restore.

        Raises:
            OSError: The error of the first volume that failed to fetch or extract
        """
        if self.storage is None:
            logger.warning("No backup location configured, initializing new environment")
            self.initiation_strategy.initialize_new_environment(self.root)
            return

        existing_files = ExistingFileMetadata(self.storage.list_metadata_for_existing_files())
        logger.info(f"Listed {len(existing_files)} existing file name(s)")
        backup_files = self.storage.find_latest_backup()

        if not backup_files:
            logger.warning("No backup files found, initializing new environment")
            self.initiation_strategy.initialize_new_environment(self.root)
            return

        final_backup_file = backup_files[-1]
        logger.info(f"Restoring from {len(backup_files)} backup file(s) up to: {final_backup_file}")

        if self.scratch_dir:
            os.makedirs(self.scratch_dir, exist_ok=True)
        temp_dir = tempfile.mkdtemp(prefix=TMP_DIR_PREFIX, dir=self.scratch_dir)
        logger.debug(f"Using temp directory: {temp_dir}")

        try:
            self._fetch_and_extract(backup_files, existing_files, temp_dir)
        finally:
            self._cleanup(temp_dir)

        logger.debug("Backup restored, initializing restored environment")
        self.initiation_strategy.initialize_restored_environment(self.root, final_backup_file)

    def _fetch_and_extract(self, backup_files: List[str], existing_files: ExistingFileMetadata,
                           temp_dir: str):
        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='restore')
        try:
            futures: List[Future] = []
            previous: Optional[Future] = None
            # tasks start in submission order, so a predecessor is always
            # running before its successor starts waiting on it
            for backup_file in backup_files:
                previous = executor.submit(
                    self._fetch_extract_task, backup_file, previous, existing_files, temp_dir
                )
                futures.append(previous)

            for future in futures:
                future.result()
        except BaseException:
            executor.shutdown(wait=True, cancel_futures=True)
            raise
        else:
            executor.shutdown(wait=True)

    def _fetch_extract_task(self, backup_file: str, previous: Optional[Future],
                            existing_files: ExistingFileMetadata, temp_dir: str) -> bool:
        """
        Fetch one volume, wait for the preceding task, then extract the volume.

        Returns:
            True if the volume was extracted, False if the chain was already broken
        """
        volume_path = os.path.join(temp_dir, backup_file)

        try:
            logger.debug(f"Fetching backup volume: {backup_file}")
            self.storage.load_file(backup_file, volume_path)

            if previous is not None:
                logger.debug(f"Waiting for previous task before extracting {backup_file}")
                wait([previous])
                if previous.cancelled() or previous.exception() is not None or not previous.result():
                    logger.debug(f"Previous task failed, not extracting {backup_file}")
                    return False

            logger.info(f"Extracting backup volume: {backup_file}")
            with self.volume.extract(volume_path) as extractor:
                self.scope.extract_files(self.root, extractor, self.overwrite, existing_files)
            return True

        finally:
            self._remove_volume(volume_path)

    def _remove_volume(self, volume_path: str):
        try:
            if os.path.lexists(volume_path):
                os.remove(volume_path)
        except OSError as e:
            logger.warning(f"Failed to delete fetched volume {volume_path}: {e}")

    def _cleanup(self, temp_dir: str):
        try:
            logger.debug(f"Deleting temp directory: {temp_dir}")
            shutil.rmtree(temp_dir)
        except OSError as e:
            logger.warning(f"Failed to cleanup temp directory {temp_dir}: {e}")
