"""
Unit tests for the version marker (homevault/backup/version.py).
"""

from homevault.backup.version import get_file_system_version, update_file_system_version


class TestFileSystemVersion:
    """Test reading and writing the version marker."""

    def test_missing_version(self, tmp_path):
        """Test a directory without marker has no version."""
        assert get_file_system_version(str(tmp_path)) is None

    def test_round_trip(self, tmp_path):
        """Test the written version is read back."""
        update_file_system_version(str(tmp_path), '2.1')

        assert get_file_system_version(str(tmp_path)) == '2.1'
        assert (tmp_path / 'upgrade-version').read_text().startswith('#')

    def test_last_line_wins(self, tmp_path):
        """Test the last entry of the marker is the version."""
        (tmp_path / 'upgrade-version').write_text('# comment\n1.0\n\n2.0\n')

        assert get_file_system_version(str(tmp_path)) == '2.0'
