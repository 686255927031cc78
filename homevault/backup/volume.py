"""
Archive container abstraction for backups.

A Volume is a container format (zip, tar, ...) that backups are written to
and restored from. Supports:
- VolumeCreator: create a new container and append files to it
- VolumeExtractor: open an existing container and iterate over its entries
- VolumeEntry: a single entry that can extract itself to a target path

The Forwarding* classes wrap another instance and delegate every call to it,
so that scopes can override individual operations.
"""

import os
import shutil
from abc import ABC, abstractmethod
from typing import Iterator, Optional


class VolumeError(OSError):
    """Raised when a volume cannot be read or written."""
    pass


class VolumeStateError(RuntimeError):
    """Raised when a closed creator or extractor is used."""
    pass


class VolumeEntry(ABC):
    """A volume entry which can be extracted to a given target path."""

    @property
    @abstractmethod
    def name(self) -> str:
        """'/'-separated path of the entry inside the volume."""

    @property
    @abstractmethod
    def is_directory(self) -> bool:
        pass

    @property
    @abstractmethod
    def is_symlink(self) -> bool:
        pass

    @abstractmethod
    def extract_to(self, target: str, overwrite: bool = False):
        """
        Extract the contents of this entry to the given target path.

        If overwrite is False and the target already exists, this is a no-op.

        Args:
            target: Filesystem path the entry should be extracted to
            overwrite: Whether an existing target should be replaced
        """


class VolumeCreator(ABC):
    """
    Adds files to a new volume.

    Usable as a context manager; leaving the block closes the creator.
    """

    @abstractmethod
    def add_file(self, file: str, name_in_volume: str, attrs: Optional[os.stat_result] = None) -> int:
        """
        Add a file, directory or symlink to the volume.

        Args:
            file: Path of the file on disk
            name_in_volume: '/'-separated name to store the file under
            attrs: Result of os.lstat() for the file, read from disk if omitted

        Returns:
            Number of entries added so far
        """

    @property
    @abstractmethod
    def file_count(self) -> int:
        pass

    @abstractmethod
    def close(self):
        """Finalize the volume. No files can be added afterwards."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class VolumeExtractor(ABC):
    """
    Iterates over the entries of an existing volume.

    Every call to iter() returns a fresh iterator over all entries, until the
    extractor is closed. Usable as a context manager.
    """

    @abstractmethod
    def __iter__(self) -> Iterator[VolumeEntry]:
        pass

    @abstractmethod
    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class Volume(ABC):
    """A container format used to store backups."""

    @property
    @abstractmethod
    def file_extension(self) -> str:
        """Extension typically used by containers of this volume, e.g. 'zip'."""

    @abstractmethod
    def create_new(self, path: str) -> VolumeCreator:
        """
        Create a new container at the given path.

        Raises:
            FileExistsError: If the path already exists
        """

    @abstractmethod
    def extract(self, path: str) -> VolumeExtractor:
        """
        Open an existing container for extraction.

        Raises:
            VolumeError: If the container cannot be read
        """


class ForwardingVolumeCreator(VolumeCreator):
    """VolumeCreator that forwards all calls to a wrapped creator."""

    def __init__(self, creator: VolumeCreator):
        self._creator = creator

    def add_file(self, file: str, name_in_volume: str, attrs: Optional[os.stat_result] = None) -> int:
        return self._creator.add_file(file, name_in_volume, attrs)

    @property
    def file_count(self) -> int:
        return self._creator.file_count

    def close(self):
        self._creator.close()


class ForwardingVolumeExtractor(VolumeExtractor):
    """VolumeExtractor that forwards all calls to a wrapped extractor."""

    def __init__(self, extractor: VolumeExtractor):
        self._extractor = extractor

    def __iter__(self) -> Iterator[VolumeEntry]:
        return iter(self._extractor)

    def close(self):
        self._extractor.close()


class ForwardingVolumeEntry(VolumeEntry):
    """VolumeEntry that forwards all calls to a wrapped entry."""

    def __init__(self, entry: VolumeEntry):
        self._entry = entry

    @property
    def name(self) -> str:
        return self._entry.name

    @property
    def is_directory(self) -> bool:
        return self._entry.is_directory

    @property
    def is_symlink(self) -> bool:
        return self._entry.is_symlink

    def extract_to(self, target: str, overwrite: bool = False):
        self._entry.extract_to(target, overwrite)


def remove_path(path: str):
    """Remove a file, symlink or directory tree at path, if present."""
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    elif os.path.lexists(path):
        os.remove(path)


def create_volume(volume_format: str = 'zip') -> Volume:
    """
    Create a volume for the given container format.

    Args:
        volume_format: Format to use ('zip', 'tar', 'tar.gz', 'tar.bz2', 'tar.xz')

    Returns:
        Volume instance for the format

    Raises:
        ValueError: If volume_format is invalid
    """
    from .zip_volume import ZipVolume
    from .tar_volume import TarVolume

    format_map = {
        'zip': lambda: ZipVolume(),
        'tar': lambda: TarVolume(compression=None),
        'tar.gz': lambda: TarVolume(compression='gz'),
        'tar.bz2': lambda: TarVolume(compression='bz2'),
        'tar.xz': lambda: TarVolume(compression='xz'),
    }

    if volume_format not in format_map:
        raise ValueError(
            f"Invalid volume format: {volume_format}. "
            f"Valid options: {list(format_map.keys())}"
        )

    return format_map[volume_format]()
