"""
Unit tests for retention policies (homevault/backup/retention.py).
"""

from unittest.mock import MagicMock

from homevault.backup.retention import KeepAllBackupHistory, KeepLatestBackupHistory
from homevault.backup.storage import StorageError


class TestKeepLatestBackupHistory:
    """Test KeepLatestBackupHistory."""

    def test_keeps_only_latest(self, local_storage, storage_dir):
        """Test exactly the latest backup remains in storage."""
        for name in ['backup-1.zip', 'backup-2-incremental.zip', 'backup-X.zip']:
            (storage_dir / name).write_bytes(b'data')

        deleted = KeepLatestBackupHistory().process_historic_backups(local_storage, 'backup-X.zip')

        assert local_storage.list_files() == ['backup-X.zip']
        assert sorted(deleted) == ['backup-1.zip', 'backup-2-incremental.zip']

    def test_manifests_survive(self, local_storage, storage_dir):
        """Test bookkeeping files are never deleted."""
        (storage_dir / 'backup-X.zip').write_bytes(b'data')
        local_storage.update_last_backup(['backup-X.zip'])
        local_storage.update_existing_files_metadata(['a.txt'])

        KeepLatestBackupHistory().process_historic_backups(local_storage, 'backup-X.zip')

        assert local_storage.find_latest_backup() == ['backup-X.zip']
        assert local_storage.list_metadata_for_existing_files() == ['a.txt']

    def test_delete_failure_logged(self):
        """Test a failed deletion does not abort retention."""
        storage = MagicMock()
        storage.list_files.return_value = ['backup-1.zip', 'backup-2.zip', 'backup-X.zip']
        storage.delete_file.side_effect = [StorageError('denied'), None]

        deleted = KeepLatestBackupHistory().process_historic_backups(storage, 'backup-X.zip')

        assert deleted == ['backup-2.zip']
        assert storage.delete_file.call_count == 2


class TestKeepAllBackupHistory:
    """Test KeepAllBackupHistory."""

    def test_keeps_everything(self):
        """Test nothing is deleted."""
        storage = MagicMock()

        assert KeepAllBackupHistory().process_historic_backups(storage, 'backup-X.zip') == []
        storage.delete_file.assert_not_called()
        storage.list_files.assert_not_called()
