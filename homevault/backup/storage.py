"""
Storage backends for backup volumes and their bookkeeping files.

Supports:
- LocalFileStorage: Store in a local directory
- S3Storage: Store in an AWS S3 bucket
- IncrementalBackupStorage: Appends to the last-backup manifest instead of
  replacing it, which chains incremental backups onto the last full backup

Besides the volumes themselves, every storage keeps three small manifest
files: the last-backup pointer, the existing-files metadata and the version
marker. Manifests are UTF-8 text with a leading '#' comment line and one
entry per line.
"""

import logging
import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

LAST_BACKUP_FILE = 'last-backup'
EXISTING_FILES_METADATA = 'existing-files-metadata'
VERSION_FILE = 'upgrade-version'

INTERNAL_FILES = frozenset([LAST_BACKUP_FILE, EXISTING_FILES_METADATA, VERSION_FILE])

COMMENT_PREFIX = '#'
LAST_BACKUP_COMMENT = COMMENT_PREFIX + ' This file contains the filename of the last backup.'
EXISTING_FILES_COMMENT = COMMENT_PREFIX + ' This file contains the existing files meta data.'
VERSION_COMMENT = COMMENT_PREFIX + ' This file contains the upgrade version of the home directory.'


class StorageError(OSError):
    """Raised when storage operation fails."""
    pass


def format_manifest(comment: str, lines: Iterable[str]) -> str:
    """
    Render manifest content: the comment line followed by one entry per line.

    Args:
        comment: Comment line, starting with '#'
        lines: Entries of the manifest

    Returns:
        Manifest text
    """
    return '\n'.join([comment] + list(lines)) + '\n'


def parse_manifest(content: str) -> List[str]:
    """
    Parse manifest content, skipping blank and comment lines.

    Args:
        content: Manifest text

    Returns:
        Trimmed entries in file order
    """
    entries = []
    for line in content.splitlines():
        if line.strip() and not line.startswith(COMMENT_PREFIX):
            entries.append(line.strip())
    return entries


class Storage(ABC):
    """Pluggable backend for storing backup volumes."""

    @abstractmethod
    def store_file(self, local_path: str, filename: str):
        """Store the local file under the given filename."""

    @abstractmethod
    def load_file(self, filename: str, target: str):
        """Load the stored file with the given filename to the local target path."""

    @abstractmethod
    def delete_file(self, filename: str):
        """Delete the stored file with the given filename."""

    @abstractmethod
    def list_files(self) -> List[str]:
        """List all stored files, excluding internal bookkeeping files."""

    @abstractmethod
    def find_latest_backup(self) -> Optional[List[str]]:
        """
        Return the volume names of the latest backup, oldest first.

        Returns:
            List of volume names, or None if no backup is recorded
        """

    @abstractmethod
    def list_metadata_for_existing_files(self) -> List[str]:
        """Return the volume names of all files that existed at the last backup."""

    @abstractmethod
    def get_version_info(self) -> Optional[str]:
        """Return the version recorded with the last backup, if any."""

    @abstractmethod
    def update_last_backup(self, filenames: List[str]):
        """Replace the last-backup manifest with the given volume names."""

    @abstractmethod
    def update_existing_files_metadata(self, filenames: Iterable[str]):
        """Replace the list of files that exist in the backup."""

    @abstractmethod
    def update_version_info(self, version: Optional[str]):
        """Record the version of the backed up home directory. None is ignored."""


class ForwardingStorage(Storage):
    """Storage that forwards all calls to a wrapped storage."""

    def __init__(self, storage: Storage):
        self._storage = storage

    def store_file(self, local_path: str, filename: str):
        self._storage.store_file(local_path, filename)

    def load_file(self, filename: str, target: str):
        self._storage.load_file(filename, target)

    def delete_file(self, filename: str):
        self._storage.delete_file(filename)

    def list_files(self) -> List[str]:
        return self._storage.list_files()

    def find_latest_backup(self) -> Optional[List[str]]:
        return self._storage.find_latest_backup()

    def list_metadata_for_existing_files(self) -> List[str]:
        return self._storage.list_metadata_for_existing_files()

    def get_version_info(self) -> Optional[str]:
        return self._storage.get_version_info()

    def update_last_backup(self, filenames: List[str]):
        self._storage.update_last_backup(filenames)

    def update_existing_files_metadata(self, filenames: Iterable[str]):
        self._storage.update_existing_files_metadata(filenames)

    def update_version_info(self, version: Optional[str]):
        self._storage.update_version_info(version)


class IncrementalBackupStorage(ForwardingStorage):
    """
    Appends new volume names to the last-backup manifest.

    The manifest grows with every incremental backup until the next full
    backup replaces it.
    """

    def update_last_backup(self, filenames: List[str]):
        latest = super().find_latest_backup()
        if latest:
            filenames = list(latest) + list(filenames)
        super().update_last_backup(filenames)


class LocalFileStorage(Storage):
    """
    Handler for storing backups in a local directory.

    All files, including the manifests, live directly in storage_dir.
    """

    def __init__(self, storage_dir: str):
        """
        Initialize local storage handler.

        Args:
            storage_dir: Directory for stored backups

        Raises:
            StorageError: If the directory cannot be created
        """
        self.storage_dir = Path(storage_dir)

        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}") from e

    def store_file(self, local_path: str, filename: str):
        """
        Copy a file into local storage.

        Raises:
            StorageError: If storage fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Source file not found: {local_path}")

        dest_path = self.storage_dir / filename
        logger.debug(f"Storing {local_path} as {dest_path}")

        try:
            shutil.copy2(local_path, dest_path)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}") from e
        except OSError as e:
            raise StorageError(f"Failed to store locally: {e}") from e

    def load_file(self, filename: str, target: str):
        """
        Copy a stored file to a local path.

        Raises:
            StorageError: If the file is missing or cannot be copied
        """
        source_path = self.storage_dir / filename
        logger.debug(f"Loading {source_path} to {target}")

        try:
            shutil.copy2(source_path, target)
        except FileNotFoundError as e:
            raise StorageError(f"Stored file not found: {filename}") from e
        except OSError as e:
            raise StorageError(f"Failed to load {filename}: {e}") from e

    def delete_file(self, filename: str):
        """
        Delete a file from local storage.

        Raises:
            StorageError: If deletion fails
        """
        full_path = self.storage_dir / filename
        logger.debug(f"Deleting {full_path}")

        try:
            full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}") from e
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}") from e

    def list_files(self) -> List[str]:
        try:
            return sorted(
                path.name for path in self.storage_dir.iterdir()
                if path.name not in INTERNAL_FILES
            )
        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}") from e

    def _read_manifest(self, name: str) -> Optional[List[str]]:
        path = self.storage_dir / name
        if not path.exists():
            return None
        try:
            return parse_manifest(path.read_text(encoding='utf-8'))
        except OSError as e:
            raise StorageError(f"Failed to read {name}: {e}") from e

    def _write_manifest(self, name: str, comment: str, lines: Iterable[str]):
        path = self.storage_dir / name
        try:
            path.write_text(format_manifest(comment, lines), encoding='utf-8')
        except OSError as e:
            raise StorageError(f"Failed to write {name}: {e}") from e

    def find_latest_backup(self) -> Optional[List[str]]:
        return self._read_manifest(LAST_BACKUP_FILE)

    def list_metadata_for_existing_files(self) -> List[str]:
        return self._read_manifest(EXISTING_FILES_METADATA) or []

    def get_version_info(self) -> Optional[str]:
        lines = self._read_manifest(VERSION_FILE)
        return lines[-1] if lines else None

    def update_last_backup(self, filenames: List[str]):
        logger.debug("Updating last-backup file")
        self._write_manifest(LAST_BACKUP_FILE, LAST_BACKUP_COMMENT, filenames)

    def update_existing_files_metadata(self, filenames: Iterable[str]):
        logger.debug("Updating existing files metadata")
        self._write_manifest(EXISTING_FILES_METADATA, EXISTING_FILES_COMMENT, sorted(filenames))

    def update_version_info(self, version: Optional[str]):
        if version is None:
            return
        logger.debug(f"Updating version information: {version}")
        self._write_manifest(VERSION_FILE, VERSION_COMMENT, [version])

    def __eq__(self, other):
        return isinstance(other, LocalFileStorage) and self.storage_dir == other.storage_dir

    def __hash__(self):
        return hash(self.storage_dir)

    def __repr__(self):
        return f'<LocalFileStorage dir={self.storage_dir}>'


class S3Storage(Storage):
    """
    Handler for storing backups in AWS S3.

    Objects are stored under the key {prefix}{filename}.
    """

    MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
    CHUNK_SIZE = 10 * 1024 * 1024  # 10MB

    def __init__(self, bucket_name: str, region: str = 'us-east-1', prefix: str = '',
                 access_key: Optional[str] = None, secret_key: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            prefix: Key prefix for all objects, e.g. 'backups/'
            access_key: AWS access key ID, default credential chain if omitted
            secret_key: AWS secret access key
        """
        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}") from e

    def _key(self, filename: str) -> str:
        return f"{self.prefix}{filename}"

    def _wrap(self, action: str, e: Exception) -> StorageError:
        if isinstance(e, ClientError):
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            return StorageError(f"S3 {action} failed ({error_code}): {e}")
        return StorageError(f"S3 {action} failed: {e}")

    def store_file(self, local_path: str, filename: str):
        """
        Upload a file to S3.

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        key = self._key(filename)
        logger.debug(f"Uploading {local_path} to s3://{self.bucket_name}/{key}")

        try:
            file_size = os.path.getsize(local_path)
            if file_size > self.MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, key)
            else:
                self._simple_upload(local_path, key)
        except (ClientError, BotoCoreError, OSError) as e:
            raise self._wrap('upload', e) from e

    def _simple_upload(self, local_path: str, key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(Bucket=self.bucket_name, Key=key, Body=f)

    def _multipart_upload(self, local_path: str, key: str):
        """
        Upload large file in chunks. The upload is aborted on any failure.

        Args:
            local_path: Path to local file
            key: S3 object key
        """
        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=key)
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(self.CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def load_file(self, filename: str, target: str):
        """
        Download an object from S3 to a local path.

        Raises:
            StorageError: If download fails
        """
        key = self._key(filename)
        logger.debug(f"Downloading s3://{self.bucket_name}/{key} to {target}")

        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
            with open(target, 'wb') as f:
                for chunk in response['Body'].iter_chunks(self.CHUNK_SIZE):
                    f.write(chunk)
        except (ClientError, BotoCoreError, OSError) as e:
            raise self._wrap('download', e) from e

    def delete_file(self, filename: str):
        """
        Delete an object from S3.

        Raises:
            StorageError: If deletion fails
        """
        key = self._key(filename)
        logger.debug(f"Deleting s3://{self.bucket_name}/{key}")

        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise self._wrap('delete', e) from e

    def list_files(self) -> List[str]:
        """
        List stored files below the prefix, without bookkeeping files.

        Raises:
            StorageError: If listing fails
        """
        try:
            files = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=self.prefix):
                for obj in page.get('Contents', []):
                    filename = obj['Key'][len(self.prefix):]
                    # nested keys belong to someone else
                    if filename and '/' not in filename and filename not in INTERNAL_FILES:
                        files.append(filename)

            return files

        except (ClientError, BotoCoreError) as e:
            raise self._wrap('list', e) from e

    def _read_manifest(self, name: str) -> Optional[List[str]]:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=self._key(name))
            return parse_manifest(response['Body'].read().decode('utf-8'))
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('NoSuchKey', '404'):
                logger.debug(f"Manifest {name} not found in bucket {self.bucket_name}")
                return None
            raise self._wrap(f'read of {name}', e) from e
        except BotoCoreError as e:
            raise self._wrap(f'read of {name}', e) from e

    def _write_manifest(self, name: str, comment: str, lines: Iterable[str]):
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=self._key(name),
                Body=format_manifest(comment, lines).encode('utf-8'),
                ContentType='text/plain; charset=utf-8'
            )
        except (ClientError, BotoCoreError) as e:
            raise self._wrap(f'write of {name}', e) from e

    def find_latest_backup(self) -> Optional[List[str]]:
        files = self._read_manifest(LAST_BACKUP_FILE)
        if not files:
            logger.debug("Last-backup file is missing or empty, no backups available")
            return None
        return files

    def list_metadata_for_existing_files(self) -> List[str]:
        files = self._read_manifest(EXISTING_FILES_METADATA)
        if not files:
            logger.warning(
                "No files listed in existing files metadata. Either this is a new "
                "environment or there was an issue during backup"
            )
            return []
        return files

    def get_version_info(self) -> Optional[str]:
        lines = self._read_manifest(VERSION_FILE)
        return lines[-1] if lines else None

    def update_last_backup(self, filenames: List[str]):
        logger.debug("Updating last-backup file")
        self._write_manifest(LAST_BACKUP_FILE, LAST_BACKUP_COMMENT, filenames)

    def update_existing_files_metadata(self, filenames: Iterable[str]):
        logger.debug("Updating existing files metadata")
        self._write_manifest(EXISTING_FILES_METADATA, EXISTING_FILES_COMMENT, sorted(filenames))

    def update_version_info(self, version: Optional[str]):
        if version is None:
            return
        logger.debug(f"Updating version information: {version}")
        self._write_manifest(VERSION_FILE, VERSION_COMMENT, [version])

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Returns:
            True if connection is successful

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}") from e
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}") from e
            raise self._wrap('connection test', e) from e
        except BotoCoreError as e:
            raise self._wrap('connection test', e) from e

    def __eq__(self, other):
        return (isinstance(other, S3Storage) and self.bucket_name == other.bucket_name
                and self.prefix == other.prefix)

    def __hash__(self):
        return hash((self.bucket_name, self.prefix))

    def __repr__(self):
        return f'<S3Storage bucket={self.bucket_name} prefix={self.prefix!r}>'


def validate_local_directory(value: Optional[str]) -> Optional[str]:
    """
    Check a local storage directory setting.

    Returns:
        Error message, or None if the directory is usable
    """
    if value is None or not value.strip():
        return "A storage directory is required"
    value = value.strip()
    if not os.path.exists(value):
        return f"Storage directory does not exist: {value}"
    if not os.path.isdir(value):
        return f"Storage path is not a directory: {value}"
    if not os.access(value, os.W_OK):
        return f"Storage directory is not writable: {value}"
    return None


def validate_bucket(value: Optional[str]) -> Optional[str]:
    """
    Check an S3 bucket setting.

    Returns:
        Error message, or None if the bucket name is usable
    """
    if value is None or not value.strip():
        return "A bucket name is required"
    return None


def create_storage(storage_type: str, **options) -> Storage:
    """
    Create a storage backend from configuration values.

    Args:
        storage_type: 'local' or 's3'
        **options: directory for 'local'; bucket_name, region, prefix,
            access_key, secret_key for 's3'

    Returns:
        Storage instance

    Raises:
        ValueError: If storage_type is invalid or the options do not validate
    """
    factories: dict = {
        'local': (lambda: validate_local_directory(options.get('directory')),
                  lambda: LocalFileStorage(options['directory'])),
        's3': (lambda: validate_bucket(options.get('bucket_name')),
               lambda: S3Storage(
                   bucket_name=options['bucket_name'].strip(),
                   region=options.get('region') or 'us-east-1',
                   prefix=options.get('prefix') or '',
                   access_key=options.get('access_key'),
                   secret_key=options.get('secret_key'),
               )),
    }

    if storage_type not in factories:
        raise ValueError(f"Invalid storage type: {storage_type}. Valid options: {list(factories.keys())}")

    validate, factory = factories[storage_type]
    error = validate()
    if error:
        raise ValueError(error)
    return factory()
