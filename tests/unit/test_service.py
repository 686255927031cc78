"""
Unit tests for the backup service (homevault/service.py).

Tests the backup decisions, backup/restore exclusivity and the service
factory in homevault/__init__.py.
"""

import os
from datetime import timedelta
from unittest.mock import patch

import pytest

from homevault import create_service
from homevault.backup.storage import LocalFileStorage, StorageError
from homevault.service import BackupRun, RestoreError, build_scope


@pytest.fixture
def service(home_dir, tmp_path):
    service = create_service(
        'testing', configure_logs=False,
        HOME_DIR=str(home_dir), LOCAL_BACKUP_DIR=str(tmp_path / 'storage')
    )
    service.initialize()
    return service


class TestBuildScope:
    """Test scope configuration."""

    def test_default_scope_only(self):
        """Test the default configuration backs up the home directory."""
        scope = build_scope()

        assert [prefix for _, prefix in scope.sub_scopes] == ['Default/']

    def test_custom_scopes(self, tmp_path):
        """Test custom scopes are added under their names."""
        scope = build_scope(
            f'[{{"scope_name": "Shared", "filepath": "{tmp_path}", "excluded_filepaths": []}}]'
        )

        assert [prefix for _, prefix in scope.sub_scopes] == ['Default/', 'Shared/']

    def test_without_default_scope(self, tmp_path):
        """Test the default scope can be left out."""
        scope = build_scope(f'[{{"scope_name": "Shared", "filepath": "{tmp_path}"}}]', False)

        assert [prefix for _, prefix in scope.sub_scopes] == ['Shared/']

    @pytest.mark.parametrize('custom_scopes', [
        'not json',
        '{"scope_name": "Shared"}',
        '[{"scope_name": "Shared"}]',
        '[{"scope_name": "Default", "filepath": "/tmp"}]',
        '[{"scope_name": "a/b", "filepath": "/tmp"}]',
    ])
    def test_invalid_custom_scopes(self, custom_scopes):
        """Test malformed or colliding scopes are rejected."""
        with pytest.raises(ValueError):
            build_scope(custom_scopes)


class TestBackupRun:
    """Test BackupRun."""

    def test_duration(self, service):
        """Test the duration of a finished run."""
        run = service.create_backup(full=True)

        assert run.kind == 'full'
        assert run.duration_seconds is not None and run.duration_seconds >= 0

    def test_unfinished(self):
        """Test an unfinished run has no duration."""
        from datetime import datetime, timezone
        run = BackupRun(full=False, started_at=datetime.now(timezone.utc))

        assert run.kind == 'incremental'
        assert run.duration_seconds is None


class TestServiceFactory:
    """Test create_service."""

    def test_local_storage(self, service, tmp_path):
        """Test the local storage directory is created and used."""
        assert service.storage == LocalFileStorage(str(tmp_path / 'storage'))
        assert service.enable_backup is True
        assert service.settings['SCRATCH_DIR'] == os.path.join(service.root, 'backup-tmp')

    def test_invalid_storage_disables_backup(self, home_dir):
        """Test an invalid storage configuration disables backup and restore."""
        service = create_service(
            'testing', configure_logs=False,
            HOME_DIR=str(home_dir), STORAGE_TYPE='s3', S3_BUCKET=None, ENABLE_AUTO_RESTORE=True
        )

        assert service.storage is None
        assert service.enable_backup is False
        assert service.enable_auto_restore is False

        service.initialize()
        assert service.run_periodic_check() is None
        assert service.create_backup() is None


class TestBackupDecisions:
    """Test periodic backup checks."""

    def test_flag_set_until_initialized(self, home_dir, tmp_path):
        """Test no backup runs before initialize() finished."""
        service = create_service(
            'testing', configure_logs=False,
            HOME_DIR=str(home_dir), LOCAL_BACKUP_DIR=str(tmp_path / 'storage')
        )

        assert service.backup_or_restore_in_progress is True
        assert service.create_backup() is None

        service.initialize()
        assert service.backup_or_restore_in_progress is False

    def test_first_check_creates_full_backup(self, service):
        """Test the first check creates a full backup and the next does nothing."""
        run = service.run_periodic_check()

        assert run.full is True
        assert run.success is True
        assert len(service.storage.find_latest_backup()) == 1

        assert service.run_periodic_check() is None

    def test_config_change_creates_incremental_backup(self, service, home_dir):
        """Test a configuration change leads to an incremental backup."""
        service.run_periodic_check()
        changed_at = service.last_backup_time + timedelta(seconds=10)
        changed = home_dir / 'config.xml'
        changed.write_text('<config changed="true"/>')
        os.utime(changed, (changed_at.timestamp(), changed_at.timestamp()))

        service.mark_config_changed(changed_at)
        run = service.run_periodic_check()

        assert run.full is False
        assert run.success is True
        manifest = service.storage.find_latest_backup()
        assert len(manifest) == 2
        assert manifest[1].endswith('-incremental.zip')

    def test_saved_config_file_creates_incremental_backup(self, service, home_dir):
        """Test a saved job configuration is detected by the periodic check."""
        service.run_periodic_check()
        saved_at = (service.last_backup_time + timedelta(seconds=10)).timestamp()
        job_config = home_dir / 'jobs' / 'build' / 'config.xml'
        job_config.write_text('<job changed="true"/>')
        os.utime(job_config, (saved_at, saved_at))

        run = service.run_periodic_check()

        assert run.full is False
        assert service.config_changed_at.timestamp() == pytest.approx(saved_at)
        assert len(service.storage.find_latest_backup()) == 2

    def test_unchanged_config_files_not_recorded_again(self, service):
        """Test an older configuration change does not replace a newer one."""
        newer = service.detect_config_changes() + timedelta(hours=1)
        service.mark_config_changed(newer)

        service.detect_config_changes()

        assert service.config_changed_at == newer

    def test_no_config_files(self, service):
        """Test nothing is recorded without matching configuration files."""
        service.config_file_patterns = ['missing/*.xml']

        assert service.detect_config_changes() is None
        assert service.config_changed_at is None

    def test_incremental_after_interval(self, service):
        """Test an incremental backup is due after its interval."""
        service.run_periodic_check()
        service.last_backup_time -= timedelta(minutes=5)

        assert service.should_create_full_backup() is False
        assert service.should_create_incremental_backup() is True

    def test_full_after_interval(self, service):
        """Test a full backup is due after its interval."""
        service.run_periodic_check()
        service.last_full_backup_time -= timedelta(hours=2)

        assert service.should_create_full_backup() is True

    def test_manual_backup_request(self, service):
        """Test a manual request forces the next backup to be full."""
        service.run_periodic_check()
        service.request_manual_backup()

        run = service.run_periodic_check()

        assert run.full is True
        assert service.manual_backup_requested is False

    def test_failure_forces_full_backup(self, service):
        """Test a failed backup is recorded and triggers a full backup."""
        service.run_periodic_check()

        with patch.object(service.storage, 'store_file', side_effect=StorageError('disk full')):
            run = service.create_backup(full=True)

        assert run.success is False
        assert 'disk full' in run.error
        assert service.last_backup_failed is True
        assert service.backup_or_restore_in_progress is False
        assert service.should_create_full_backup() is True

        assert service.run_periodic_check().full is True
        assert service.last_backup_failed is False

    def test_incremental_without_previous_backup_is_full(self, service):
        """Test an incremental backup without previous backup becomes full."""
        run = service.create_backup(full=False)

        assert run.full is True

    def test_busy_service_skips_backup(self, service):
        """Test no backup runs while another operation holds the flag."""
        assert service.begin_backup_or_restore() is True

        assert service.create_backup() is None
        assert service.begin_backup_or_restore() is False

        service.end_backup_or_restore()
        assert service.create_backup() is not None

    def test_backups_disabled(self, service):
        """Test disabled backups never run."""
        service.enable_backup = False

        assert service.run_periodic_check() is None

    def test_existing_backup_seeds_last_backup_time(self, service, home_dir, tmp_path):
        """Test a restarted service continues with incremental backups."""
        service.run_periodic_check()

        restarted = create_service(
            'testing', configure_logs=False,
            HOME_DIR=str(home_dir), LOCAL_BACKUP_DIR=str(tmp_path / 'storage')
        )
        restarted.initialize()

        assert restarted.last_backup_time is not None
        assert restarted.should_create_full_backup() is False

    def test_status(self, service):
        """Test the status summary."""
        service.run_periodic_check()

        status = service.get_status()

        assert status['backup_enabled'] is True
        assert status['in_progress'] is False
        assert status['last_backup_time'] is not None
        assert status['last_backup_failed'] is False


class TestServiceRestore:
    """Test restores through the service."""

    def test_restore(self, service, home_dir):
        """Test a restore records the restored backup."""
        run = service.run_periodic_check()

        service.restore()

        log = (home_dir / '.restore.log').read_text()
        assert log.startswith(service.storage.find_latest_backup()[-1])
        assert run.success is True
        assert service.backup_or_restore_in_progress is False

    def test_restore_failure(self, service):
        """Test restore errors are raised as RestoreError."""
        service.run_periodic_check()

        with patch.object(service.storage, 'load_file', side_effect=StorageError('unreachable')):
            with pytest.raises(RestoreError):
                service.restore()

        assert service.backup_or_restore_in_progress is False

    def test_restore_while_busy(self, service):
        """Test a restore is refused while another operation runs."""
        service.begin_backup_or_restore()

        with pytest.raises(RestoreError):
            service.restore()

    def test_auto_restore_on_initialize(self, service, home_dir, tmp_path):
        """Test initialize() restores the latest backup into an empty home."""
        service.run_periodic_check()
        new_home = tmp_path / 'new-home'

        restored = create_service(
            'testing', configure_logs=False, ENABLE_AUTO_RESTORE=True,
            HOME_DIR=str(new_home), LOCAL_BACKUP_DIR=str(tmp_path / 'storage')
        )
        restored.initialize()

        assert (new_home / 'config.xml').read_text() == '<config/>'
        assert (new_home / 'jobs' / 'build' / 'config.xml').read_text() == '<job/>'
        assert restored.backup_or_restore_in_progress is False
