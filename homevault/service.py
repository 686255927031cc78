"""
Backup service - coordinates backups and restores of the home directory.

The service owns the system wide backup/restore flag: at most one backup or
restore runs at a time. The flag starts out set, since the auto-restore in
initialize() has to finish before the first backup may run.
"""

import glob
import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from .backup.initiation import RestartAfterRestoreStrategy, RestoreLog
from .backup.procedure import BackupProcedure
from .backup.restore import RestoreProcedure
from .backup.retention import KeepAllBackupHistory, KeepLatestBackupHistory
from .backup.scope import CustomScope, DefaultBackupScope, FilteringScope, IncrementalScope, MultiScope
from .backup.storage import IncrementalBackupStorage, Storage, StorageError
from .backup.triggers import (
    BackupTrigger,
    ConfigFileChangedBackupTrigger,
    CronBackupTrigger,
    FailureBackupTrigger,
    PeriodicBackupTrigger,
    or_,
)
from .backup.volume import Volume

logger = logging.getLogger(__name__)

WORKER_LOG_FILENAME = 'homevault-worker.log'
INCREMENTAL_SUFFIX = '-incremental'
# configuration files of the home directory, relative to the root
DEFAULT_CONFIG_FILE_PATTERNS = ['*.xml', 'jobs/*/config.xml']


class RestoreError(OSError):
    """Raised when restoring the latest backup fails."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BackupRun:
    """Record of one backup attempt."""
    full: bool
    started_at: datetime
    finished_at: Optional[datetime] = None
    backup_time: Optional[datetime] = None
    success: bool = False
    error: Optional[str] = None

    @property
    def kind(self) -> str:
        return 'full' if self.full else 'incremental'

    @property
    def duration_seconds(self) -> Optional[int]:
        if self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds())


def build_scope(custom_scopes: str = '[]', include_default_scope: bool = True) -> MultiScope:
    """
    Build the backup scope from configuration.

    Every configured scope becomes a sub-scope under '<scope_name>/'.

    Args:
        custom_scopes: JSON list of {"scope_name", "filepath", "excluded_filepaths"}
        include_default_scope: Whether the whole home directory is backed up as 'Default'

    Returns:
        MultiScope over all configured scopes

    Raises:
        ValueError: If the custom scopes are malformed or their names collide
    """
    scopes = []
    if include_default_scope:
        scopes.append(DefaultBackupScope())

    try:
        entries = json.loads(custom_scopes or '[]')
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid CUSTOM_SCOPES: {e}") from e

    if not isinstance(entries, list):
        raise ValueError("CUSTOM_SCOPES must be a JSON list")

    for entry in entries:
        if not isinstance(entry, dict) or not entry.get('scope_name') or not entry.get('filepath'):
            raise ValueError(f"Custom scope needs scope_name and filepath: {entry}")
        scopes.append(CustomScope(
            filepath=entry['filepath'],
            scope_name=entry['scope_name'],
            excluded_filepaths=entry.get('excluded_filepaths') or []
        ))

    multi_scope = MultiScope()
    names = set()
    for scope in scopes:
        name = scope.scope_name
        if '/' in name or name in names:
            raise ValueError(f"Scope name must be unique and must not contain '/': {name}")
        names.add(name)
        multi_scope.add_sub_scope(scope, name + '/')

    return multi_scope


class BackupService:
    """
    Coordinates backup and restore of the home directory.
    """

    def __init__(self, volume: Volume, scope: MultiScope, storage: Optional[Storage], root: str,
                 scratch_dir: Optional[str] = None,
                 enable_backup: bool = True,
                 enable_auto_restore: bool = True,
                 restore_overwrites_data: bool = False,
                 full_backup_interval: timedelta = timedelta(hours=1),
                 incremental_backup_interval: timedelta = timedelta(minutes=3),
                 full_backup_cron: Optional[str] = None,
                 restore_workers: int = 4,
                 restart: Optional[Callable[[], None]] = None,
                 config_file_patterns: Optional[List[str]] = None):
        """
        Initialize backup service.

        Args:
            volume: Container format of the backups
            scope: Scope of all backups
            storage: Storage for the backups, None disables backup and restore
            root: Home directory
            scratch_dir: Directory for temporary files
            enable_backup: Whether periodic backups are created
            enable_auto_restore: Whether initialize() restores the latest backup
            restore_overwrites_data: Whether a restore replaces existing files
            full_backup_interval: Interval between full backups
            incremental_backup_interval: Interval between incremental backups
            full_backup_cron: Crontab for full backups, replaces the interval
            restore_workers: Number of volumes fetched concurrently on restore
            restart: Callback restarting the host after a restore
            config_file_patterns: Globs of configuration files below the root,
                a change of one of them triggers an incremental backup
        """
        self.volume = volume
        self.scope = scope
        self.storage = storage
        self.root = root
        self.scratch_dir = scratch_dir
        self.enable_backup = enable_backup
        self.enable_auto_restore = enable_auto_restore
        self.restore_overwrites_data = restore_overwrites_data
        self.restore_workers = restore_workers
        self.restart = restart
        self.config_file_patterns = (DEFAULT_CONFIG_FILE_PATTERNS if config_file_patterns is None
                                     else config_file_patterns)

        self.last_backup_time: Optional[datetime] = None
        self.last_full_backup_time: Optional[datetime] = None
        self.last_backup_failed = False
        self.manual_backup_requested = False
        self.config_changed_at: Optional[datetime] = None
        self.last_run: Optional[BackupRun] = None
        self.settings: dict = {}

        self._lock = threading.Lock()
        self._backup_or_restore_in_progress = True

        if full_backup_cron:
            periodic_full: BackupTrigger = CronBackupTrigger(full_backup_cron)
        else:
            periodic_full = PeriodicBackupTrigger(full_backup_interval)

        self.full_backup_trigger = or_(
            FailureBackupTrigger(lambda: self.last_backup_failed),
            periodic_full
        )
        self.incremental_backup_trigger = or_(
            ConfigFileChangedBackupTrigger(lambda: self.config_changed_at),
            PeriodicBackupTrigger(incremental_backup_interval)
        )

    # Backup/restore exclusivity

    def begin_backup_or_restore(self) -> bool:
        """
        Set the backup/restore flag.

        Returns:
            True if the flag was acquired, False if another operation is running
        """
        with self._lock:
            if self._backup_or_restore_in_progress:
                return False
            self._backup_or_restore_in_progress = True
            return True

    def end_backup_or_restore(self):
        with self._lock:
            self._backup_or_restore_in_progress = False

    @property
    def backup_or_restore_in_progress(self) -> bool:
        with self._lock:
            return self._backup_or_restore_in_progress

    # Lifecycle

    def initialize(self):
        """
        Restore the latest backup if auto-restore is enabled, then release
        the backup/restore flag.

        Raises:
            RestoreError: If the restore fails
        """
        try:
            if not self.enable_auto_restore:
                logger.info("Automatic restores are disabled")
            elif self.storage is None:
                logger.warning("Cannot restore from backup: no usable storage configured")
            else:
                self._restore()
            self._seed_last_backup_time()
        finally:
            self.end_backup_or_restore()

    def _seed_last_backup_time(self):
        if self.storage is None:
            return
        try:
            if self.storage.find_latest_backup():
                # existing backups count as current, the next backup may be incremental
                now = _utcnow()
                self.last_backup_time = now
                self.last_full_backup_time = now
        except StorageError as e:
            logger.warning(f"Could not read latest backup from storage: {e}")

    def restore(self):
        """
        Restore the latest backup into the home directory.

        Raises:
            RestoreError: If another operation is running or the restore fails
        """
        if not self.begin_backup_or_restore():
            raise RestoreError("Another backup or restore is in progress")
        try:
            self._restore()
        finally:
            self.end_backup_or_restore()

    def _restore(self):
        logger.info("Checking if backups need to be restored")
        procedure = RestoreProcedure(
            self.volume, self.scope, self.storage,
            RestartAfterRestoreStrategy(RestoreLog(self.root), self.restart),
            self.root, self.scratch_dir, self.restore_overwrites_data,
            max_workers=self.restore_workers
        )
        try:
            procedure.perform_restore()
        except OSError as e:
            logger.exception("Restore failed")
            raise RestoreError(f"Could not restore latest backup: {e}") from e

    # Decisions

    def mark_config_changed(self, changed_at: Optional[datetime] = None):
        """Record a configuration change, which triggers an incremental backup."""
        self.config_changed_at = changed_at or _utcnow()

    def detect_config_changes(self) -> Optional[datetime]:
        """
        Record the newest modification time of the configuration files as a
        configuration change, if it is newer than the last recorded change.

        Returns:
            The newest modification time, or None if no configuration file exists
        """
        newest = None
        for pattern in self.config_file_patterns:
            for path in glob.glob(os.path.join(self.root, pattern)):
                try:
                    mtime = os.stat(path).st_mtime
                except OSError as e:
                    logger.debug(f"Cannot stat configuration file {path}: {e}")
                    continue
                if newest is None or mtime > newest:
                    newest = mtime

        if newest is None:
            return None

        changed_at = datetime.fromtimestamp(newest, timezone.utc)
        if self.config_changed_at is None or changed_at > self.config_changed_at:
            logger.debug(f"Configuration changed at {changed_at.isoformat()}")
            self.mark_config_changed(changed_at)
        return changed_at

    def request_manual_backup(self):
        """Force a full backup on the next periodic check."""
        logger.info("Manual backup requested")
        self.manual_backup_requested = True

    def should_create_full_backup(self) -> bool:
        return (self.last_full_backup_time is None
                or self.manual_backup_requested
                or self.full_backup_trigger.should_create_backup(self.last_full_backup_time))

    def should_create_incremental_backup(self) -> bool:
        return self.incremental_backup_trigger.should_create_backup(self.last_backup_time)

    # Procedures

    def full_backup_procedure(self) -> BackupProcedure:
        return BackupProcedure(
            self.volume, self.scope, self.storage, KeepLatestBackupHistory(),
            self.root, self.scratch_dir
        )

    def incremental_backup_procedure(self) -> BackupProcedure:
        scope = FilteringScope(
            IncrementalScope(self.scope, self.last_backup_time),
            [DefaultBackupScope().scope_name + '/' + WORKER_LOG_FILENAME]
        )
        return BackupProcedure(
            self.volume, scope, IncrementalBackupStorage(self.storage), KeepAllBackupHistory(),
            self.root, self.scratch_dir, INCREMENTAL_SUFFIX
        )

    def run_periodic_check(self) -> Optional[BackupRun]:
        """
        Create a full or incremental backup if one is due.

        Returns:
            Record of the backup, or None if no backup was created
        """
        if not self.enable_backup:
            logger.debug("Backups are disabled")
            return None
        if self.storage is None:
            logger.debug("No storage configured, skipping backup")
            return None

        self.detect_config_changes()

        if self.should_create_full_backup():
            return self.create_backup(full=True)
        if self.should_create_incremental_backup():
            return self.create_backup(full=False)

        logger.debug("No backup due")
        return None

    def create_backup(self, full: bool = True) -> Optional[BackupRun]:
        """
        Create a backup. Failures are logged and recorded, never raised.

        Args:
            full: Whether a full backup is created, otherwise an incremental one

        Returns:
            Record of the backup, or None if another operation is running
        """
        if self.storage is None:
            logger.warning("No storage configured, cannot create backup")
            return None
        if not full and self.last_backup_time is None:
            full = True

        if not self.begin_backup_or_restore():
            logger.info("Backup or restore in progress, skipping backup")
            return None

        run = BackupRun(full=full, started_at=_utcnow())
        logger.info(f"Starting {run.kind} backup")

        try:
            procedure = self.full_backup_procedure() if full else self.incremental_backup_procedure()
            backup_time = procedure.perform_backup()
        except Exception as e:
            logger.exception(f"{run.kind.capitalize()} backup failed")
            self.last_backup_failed = True
            run.error = str(e)
        else:
            self.last_backup_failed = False
            self.last_backup_time = backup_time
            if full:
                self.last_full_backup_time = backup_time
                self.manual_backup_requested = False
            run.backup_time = backup_time
            run.success = True
            logger.info(f"{run.kind.capitalize()} backup complete")
        finally:
            run.finished_at = _utcnow()
            self.last_run = run
            self.end_backup_or_restore()

        return run

    def get_status(self) -> dict:
        """Summary of the service state."""
        return {
            'backup_enabled': self.enable_backup,
            'storage': repr(self.storage) if self.storage else None,
            'in_progress': self.backup_or_restore_in_progress,
            'last_backup_time': self.last_backup_time.isoformat() if self.last_backup_time else None,
            'last_full_backup_time': (self.last_full_backup_time.isoformat()
                                      if self.last_full_backup_time else None),
            'last_backup_failed': self.last_backup_failed,
            'manual_backup_requested': self.manual_backup_requested,
        }
