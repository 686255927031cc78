"""
Initiation strategies run after a restore attempt.

The restore procedure calls exactly one of the two hooks: a new environment
is initialized when there was nothing to restore, a restored environment
after all backup volumes were extracted.
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Optional

logger = logging.getLogger(__name__)

RESTORE_LOG_FILENAME = '.restore.log'
SUCCESS_MESSAGE = ' successfully restored at time: '


class InitiationStrategy(ABC):

    @abstractmethod
    def initialize_new_environment(self, root: str):
        """Called when no backup was available to restore."""

    @abstractmethod
    def initialize_restored_environment(self, root: str, last_backup_id: str):
        """
        Called after a backup was restored.

        Args:
            root: Home directory
            last_backup_id: Name of the most recent restored volume
        """


class RestoreLog:
    """
    The '.restore.log' file in the home directory.

    It holds a single line naming the last restored backup, which tells a
    restart that picks up restored data apart from a fresh restore.
    """

    # shared by all restore logs, the file may be touched from several threads
    lock = threading.Lock()

    def __init__(self, root: str):
        self.path = os.path.join(root, RESTORE_LOG_FILENAME)

    def get_last_backup_id(self) -> Optional[str]:
        """
        Read the id of the last restored backup.

        Returns:
            The backup id, or None if the log is missing or unreadable

        Raises:
            IsADirectoryError: If a directory exists at the log path
        """
        if not os.path.lexists(self.path):
            logger.debug("No restore log file found")
            return None
        if os.path.isdir(self.path):
            raise IsADirectoryError(f"Expected restore log file at {self.path}, found directory instead")

        with open(self.path, 'r', encoding='utf-8') as f:
            backup_id = self.parse_last_backup_id(f.readline())

        if backup_id is None:
            logger.debug("Could not parse last backup id from restore log")
        return backup_id

    def write_last_backup_id(self, backup_id: str):
        """Record the given backup id as the last successfully restored one."""
        if os.path.isdir(self.path):
            raise IsADirectoryError(f"Expected restore log file at {self.path}, found directory instead")

        logger.debug(f"Writing last backup id to restore log: {backup_id}")
        with open(self.path, 'w', encoding='utf-8') as f:
            f.write(self.format_log_line(backup_id))

    @staticmethod
    def parse_last_backup_id(line: Optional[str]) -> Optional[str]:
        if not line:
            return None
        index = line.find(SUCCESS_MESSAGE)
        if index < 0:
            return None
        return line[:index]

    @staticmethod
    def format_log_line(backup_id: str) -> str:
        return f"{backup_id}{SUCCESS_MESSAGE}{datetime.now().isoformat(sep=' ', timespec='seconds')}"


class RestartAfterRestoreStrategy(InitiationStrategy):
    """
    Restarts the host application after a backup was restored.

    A restart after a restore finds the restored id in the restore log and
    does not restart again.
    """

    def __init__(self, restore_log: RestoreLog, restart: Optional[Callable[[], None]] = None):
        """
        Args:
            restore_log: Log of the last restored backup
            restart: Callback restarting the host application
        """
        self.restore_log = restore_log
        self.restart = restart

    def initialize_new_environment(self, root: str):
        logger.info("Initialized new environment")

    def initialize_restored_environment(self, root: str, last_backup_id: str):
        if last_backup_id is None:
            raise ValueError("last_backup_id must not be None")

        logger.debug(f"Checking if restart is needed after restoring backup: {last_backup_id}")

        with RestoreLog.lock:
            logged_backup_id = self.restore_log.get_last_backup_id()

            if last_backup_id == logged_backup_id:
                logger.info("Successfully restored from backup")
                return

            if logged_backup_id is not None:
                logger.debug(
                    f"Restored backup {last_backup_id} does not match "
                    f"last backup in restore log: {logged_backup_id}"
                )

            self.restore_log.write_last_backup_id(last_backup_id)

        if self.restart is None:
            logger.info(f"Restored data from backup: {last_backup_id}")
            return

        logger.info(f"Restored data from backup: {last_backup_id}; restarting")
        try:
            self.restart()
        except NotImplementedError:
            logger.warning(f"Could not restart after restoring backup: {last_backup_id}")


class NewEnvironmentOnlyStrategy(InitiationStrategy):
    """Only logs, used when the host needs no special initialization."""

    def initialize_new_environment(self, root: str):
        logger.info(f"Initialized new environment in {root}")

    def initialize_restored_environment(self, root: str, last_backup_id: str):
        logger.info(f"Restored environment in {root} from backup: {last_backup_id}")
