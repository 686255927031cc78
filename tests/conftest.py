"""
Shared pytest fixtures for HomeVault tests.

This module provides fixtures for:
- Home directory trees on tmp_path
- Local storage directories
- Mock fixtures for external services (S3)
- Recording doubles for volumes, creators and scopes
"""

import os
import threading
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from homevault.backup.storage import LocalFileStorage


class RecordingCreator:
    """VolumeCreator double that remembers every added file."""

    def __init__(self):
        self.added = []
        self.closed = False

    def add_file(self, file, name_in_volume, attrs=None):
        self.added.append(name_in_volume)
        return len(self.added)

    @property
    def file_count(self):
        return len(self.added)

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class FakeExtractor:
    """Extractor double which only knows the container it was opened for."""

    def __init__(self, path):
        self.path = path
        self.name = os.path.basename(path)
        self.closed = False

    def __iter__(self):
        return iter([])

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class FakeVolume:
    """Volume double opening FakeExtractors."""

    file_extension = 'fake'

    def create_new(self, path):
        return RecordingCreator()

    def extract(self, path):
        if not os.path.exists(path):
            raise FileNotFoundError(path)
        return FakeExtractor(path)


class RecordingScope:
    """Scope double recording the order in which containers are extracted."""

    def __init__(self, fail_on=None):
        self.extracted = []
        self.fail_on = fail_on
        self._lock = threading.Lock()

    def add_files(self, root, creator, existing_names):
        pass

    def extract_files(self, root, extractor, overwrite, existing_files):
        if extractor.name == self.fail_on:
            raise OSError(f"Failed to extract {extractor.name}")
        with self._lock:
            self.extracted.append(extractor.name)


@pytest.fixture
def home_dir(tmp_path):
    """
    Create a home directory tree.

    Creates:
    - config.xml
    - jobs/build/config.xml
    - jobs/build/builds/1/log (nested, backed up)
    - workspace/output.bin (excluded by default)
    - backup-tmp/scratch.txt (excluded by default)
    - empty/ (empty directory)
    - latest -> jobs/build/config.xml (symlink)
    """
    root = tmp_path / 'home'
    root.mkdir()

    (root / 'config.xml').write_text('<config/>')

    job_dir = root / 'jobs' / 'build'
    job_dir.mkdir(parents=True)
    (job_dir / 'config.xml').write_text('<job/>')
    (job_dir / 'builds' / '1').mkdir(parents=True)
    (job_dir / 'builds' / '1' / 'log').write_text('Finished: SUCCESS')

    (root / 'workspace').mkdir()
    (root / 'workspace' / 'output.bin').write_bytes(b'\x00\x01')

    (root / 'backup-tmp').mkdir()
    (root / 'backup-tmp' / 'scratch.txt').write_text('scratch')

    (root / 'empty').mkdir()
    os.symlink('jobs/build/config.xml', root / 'latest')

    return root


@pytest.fixture
def storage_dir(tmp_path):
    path = tmp_path / 'storage'
    path.mkdir()
    return path


@pytest.fixture
def local_storage(storage_dir):
    return LocalFileStorage(str(storage_dir))


@pytest.fixture
def recording_creator():
    return RecordingCreator()


@pytest.fixture
def fake_volume():
    return FakeVolume()


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('homevault.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance


@pytest.fixture
def recording_scope():
    """Factory for RecordingScope doubles, optionally failing on one container."""
    return RecordingScope
