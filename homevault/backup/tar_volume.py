"""
TAR container format for backup volumes, with optional compression.

Supports the same compression variants as tarfile: none, gz, bz2 and xz.
"""

import logging
import os
import shutil
import stat
import tarfile
from typing import Iterator, Optional

from .volume import (
    Volume,
    VolumeCreator,
    VolumeEntry,
    VolumeError,
    VolumeExtractor,
    VolumeStateError,
    remove_path,
)

logger = logging.getLogger(__name__)


class TarVolume(Volume):
    """Volume implementation writing (optionally compressed) TAR archives."""

    _extensions = {
        None: 'tar',
        'gz': 'tar.gz',
        'bz2': 'tar.bz2',
        'xz': 'tar.xz',
    }

    def __init__(self, compression: Optional[str] = 'gz'):
        """
        Args:
            compression: One of None, 'gz', 'bz2', 'xz'
        """
        if compression not in self._extensions:
            raise ValueError(f"Invalid tar compression: {compression}")
        self.compression = compression

    @property
    def file_extension(self) -> str:
        return self._extensions[self.compression]

    def create_new(self, path: str) -> 'TarCreator':
        mode = f"x:{self.compression}" if self.compression else 'x'
        return TarCreator(path, mode)

    def extract(self, path: str) -> 'TarExtractor':
        return TarExtractor(path)


class TarCreator(VolumeCreator):
    """Writes files into a new TAR archive."""

    def __init__(self, path: str, mode: str = 'x:gz'):
        self.path = path
        logger.debug(f"Creating tar volume: {path}")
        # 'x' modes refuse to replace an existing file
        self._tar = tarfile.open(path, mode, format=tarfile.PAX_FORMAT)
        self._closed = False
        self._file_count = 0

    def add_file(self, file: str, name_in_volume: str, attrs: Optional[os.stat_result] = None) -> int:
        if self._closed:
            raise VolumeStateError("Volume closed")

        # gettarinfo uses lstat, so symlinks are stored as links, not followed
        info = self._tar.gettarinfo(file, arcname=name_in_volume)
        if info is None:
            raise VolumeError(f"Unsupported file type: {file}")

        if info.isreg():
            logger.debug(f"Adding file: {file} as {name_in_volume}")
            with open(file, 'rb') as f:
                self._tar.addfile(info, f)
        else:
            logger.debug(f"Adding {'symlink' if info.issym() else 'entry'}: {file} as {name_in_volume}")
            self._tar.addfile(info)

        self._file_count += 1
        return self._file_count

    @property
    def file_count(self) -> int:
        return self._file_count

    def close(self):
        if self._closed:
            raise VolumeStateError("Volume already closed")
        logger.debug(f"Closing tar creator: {self.path}")
        self._tar.close()
        self._closed = True


class TarExtractor(VolumeExtractor):
    """Reads entries of an existing TAR archive."""

    def __init__(self, path: str):
        self.path = path
        logger.debug(f"Opening tar volume: {path}")
        try:
            self._tar = tarfile.open(path, 'r:*')
            self._members = self._tar.getmembers()
        except tarfile.TarError as e:
            raise VolumeError(f"Not a readable tar volume: {path}: {e}")
        self._closed = False

    def __iter__(self) -> Iterator['TarVolumeEntry']:
        if self._closed:
            raise VolumeStateError("Volume closed")
        return self._iter_entries()

    def _iter_entries(self) -> Iterator['TarVolumeEntry']:
        for member in self._members:
            if self._closed:
                raise VolumeStateError("Volume closed")
            yield TarVolumeEntry(self._tar, member)

    def close(self):
        if self._closed:
            raise VolumeStateError("Volume already closed")
        logger.debug(f"Closing tar extractor: {self.path}")
        self._tar.close()
        self._closed = True


class TarVolumeEntry(VolumeEntry):
    """An entry in a TAR volume."""

    def __init__(self, tar: tarfile.TarFile, member: tarfile.TarInfo):
        self._tar = tar
        self._member = member

    @property
    def name(self) -> str:
        return self._member.name.rstrip('/')

    @property
    def is_directory(self) -> bool:
        return self._member.isdir()

    @property
    def is_symlink(self) -> bool:
        return self._member.issym()

    def extract_to(self, target: str, overwrite: bool = False):
        if not overwrite and os.path.lexists(target):
            logger.debug(f"Path already exists, skipping extraction: {target}")
            return

        if self.is_directory:
            logger.debug(f"Extracting directory: {target}")
            if os.path.lexists(target) and not os.path.isdir(target):
                remove_path(target)
            os.makedirs(target, exist_ok=True)
            return

        parent = os.path.dirname(target)
        if parent:
            os.makedirs(parent, exist_ok=True)

        if self.is_symlink:
            logger.debug(f"Extracting symlink: {target}")
            remove_path(target)
            os.symlink(self._member.linkname, target)
        elif self._member.isreg():
            logger.debug(f"Extracting file: {target}")
            if os.path.islink(target) or os.path.isdir(target):
                remove_path(target)
            source = self._tar.extractfile(self._member)
            with source, open(target, 'wb') as dest:
                shutil.copyfileobj(source, dest)
            os.chmod(target, stat.S_IMODE(self._member.mode))
        else:
            logger.warning(f"Skipping unsupported tar entry type: {self.name}")
