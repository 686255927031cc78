"""
Triggers decide whether a backup should be created now.

Every trigger is asked with the time of the last backup, or None if there
has been none. Triggers combine with or_() and and_(), which evaluate
left to right and stop at the first decisive answer.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from apscheduler.triggers.cron import CronTrigger


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BackupTrigger(ABC):

    @abstractmethod
    def should_create_backup(self, last_backup_time: Optional[datetime]) -> bool:
        """
        Args:
            last_backup_time: Time of the last backup, None if there is none

        Returns:
            True if a backup should be created
        """


class PeriodicBackupTrigger(BackupTrigger):
    """Fires once the given interval has passed since the last backup."""

    def __init__(self, interval: timedelta, clock: Callable[[], datetime] = utcnow):
        self.interval = interval
        self._clock = clock

    def should_create_backup(self, last_backup_time: Optional[datetime]) -> bool:
        if last_backup_time is None:
            return True
        return self._clock() - last_backup_time >= self.interval

    def __repr__(self):
        return f'<PeriodicBackupTrigger interval={self.interval}>'


class CronBackupTrigger(BackupTrigger):
    """
    Fires when a crontab fire time has passed since the last backup.

    Example: '0 3 * * *' fires once the first 3 AM after the last backup is
    reached.
    """

    def __init__(self, expression: str, timezone: str = 'UTC',
                 clock: Callable[[], datetime] = utcnow):
        """
        Raises:
            ValueError: If the crontab expression is invalid
        """
        self.expression = expression
        self._trigger = CronTrigger.from_crontab(expression, timezone=timezone)
        self._clock = clock

    def should_create_backup(self, last_backup_time: Optional[datetime]) -> bool:
        if last_backup_time is None:
            return True
        # fire times are computed strictly after the previous fire time
        next_fire_time = self._trigger.get_next_fire_time(last_backup_time, last_backup_time)
        return next_fire_time is not None and next_fire_time <= self._clock()

    def __repr__(self):
        return f'<CronBackupTrigger {self.expression!r}>'


class ConfigFileChangedBackupTrigger(BackupTrigger):
    """Fires when the configuration changed after the last backup."""

    def __init__(self, change_time_source: Callable[[], Optional[datetime]]):
        """
        Args:
            change_time_source: Returns the time of the latest config change, or None
        """
        self._change_time_source = change_time_source

    def should_create_backup(self, last_backup_time: Optional[datetime]) -> bool:
        changed_at = self._change_time_source()
        if changed_at is None:
            return False
        return last_backup_time is None or changed_at > last_backup_time


class FailureBackupTrigger(BackupTrigger):
    """Fires while the last backup attempt failed."""

    def __init__(self, failure_source: Callable[[], bool]):
        self._failure_source = failure_source

    def should_create_backup(self, last_backup_time: Optional[datetime]) -> bool:
        return bool(self._failure_source())


class _AnyTrigger(BackupTrigger):

    def __init__(self, *triggers: BackupTrigger):
        self.triggers = triggers

    def should_create_backup(self, last_backup_time: Optional[datetime]) -> bool:
        return any(t.should_create_backup(last_backup_time) for t in self.triggers)


class _AllTrigger(BackupTrigger):

    def __init__(self, *triggers: BackupTrigger):
        self.triggers = triggers

    def should_create_backup(self, last_backup_time: Optional[datetime]) -> bool:
        return all(t.should_create_backup(last_backup_time) for t in self.triggers)


def or_(first: BackupTrigger, second: BackupTrigger, *others: BackupTrigger) -> BackupTrigger:
    """Trigger firing if any of the given triggers fires."""
    return _AnyTrigger(first, second, *others)


def and_(first: BackupTrigger, second: BackupTrigger, *others: BackupTrigger) -> BackupTrigger:
    """Trigger firing only if all of the given triggers fire."""
    return _AllTrigger(first, second, *others)
