"""
ZIP container format for backup volumes.

Symlinks are stored as entries whose unix mode carries the link flag and
whose content is the link target, encoded as UTF-8. Directories are stored
as entries ending in '/'.
"""

import logging
import os
import shutil
import stat
import zipfile
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

# Unix creator system id, required for external_attr to carry st_mode
_UNIX_SYSTEM = 3


class ZipVolume(Volume):
    """Volume implementation writing ZIP archives."""

    @property
    def file_extension(self) -> str:
        return 'zip'

    def create_new(self, path: str) -> 'ZipCreator':
        return ZipCreator(path)

    def extract(self, path: str) -> 'ZipExtractor':
        return ZipExtractor(path)


class ZipCreator(VolumeCreator):
    """Writes files into a new ZIP archive."""

    def __init__(self, path: str):
        """
        Create the archive file.

        Args:
            path: Path of the archive, which must not exist

        Raises:
            FileExistsError: If the path already exists
        """
        self.path = path
        logger.debug(f"Creating zip volume: {path}")
        # mode 'x' refuses to replace an existing file
        # dates before 1980 are clamped instead of rejected
        self._zip = zipfile.ZipFile(path, 'x', zipfile.ZIP_DEFLATED, allowZip64=True,
                                    strict_timestamps=False)
        self._closed = False
        self._file_count = 0

    def add_file(self, file: str, name_in_volume: str, attrs: Optional[os.stat_result] = None) -> int:
        if self._closed:
            raise VolumeStateError("Volume closed")

        if attrs is None:
            attrs = os.lstat(file)

        if stat.S_ISLNK(attrs.st_mode):
            self._add_symlink(file, name_in_volume)
        elif stat.S_ISDIR(attrs.st_mode):
            self._add_directory(name_in_volume, attrs)
        elif stat.S_ISREG(attrs.st_mode):
            self._add_regular_file(file, name_in_volume)
        else:
            raise VolumeError(f"Unsupported file type: {file}")

        self._file_count += 1
        return self._file_count

    def _add_symlink(self, file: str, name_in_volume: str):
        logger.debug(f"Adding symlink: {file} as {name_in_volume}")
        link_target = os.readlink(file)
        info = zipfile.ZipInfo(name_in_volume)
        info.create_system = _UNIX_SYSTEM
        info.external_attr = (stat.S_IFLNK | 0o777) << 16
        self._zip.writestr(info, link_target.encode('utf-8'))

    def _add_directory(self, name_in_volume: str, attrs: os.stat_result):
        logger.debug(f"Adding directory: {name_in_volume}")
        # entries ending in / are directories
        info = zipfile.ZipInfo(name_in_volume.rstrip('/') + '/')
        info.create_system = _UNIX_SYSTEM
        info.external_attr = ((stat.S_IFDIR | stat.S_IMODE(attrs.st_mode)) << 16) | 0x10
        self._zip.writestr(info, b'')

    def _add_regular_file(self, file: str, name_in_volume: str):
        logger.debug(f"Adding file: {file} as {name_in_volume}")
        self._zip.write(file, name_in_volume)

    @property
    def file_count(self) -> int:
        return self._file_count

    def close(self):
        if self._closed:
            raise VolumeStateError("Volume already closed")
        logger.debug(f"Closing zip creator: {self.path}")
        self._zip.close()
        self._closed = True


class ZipExtractor(VolumeExtractor):
    """Reads entries of an existing ZIP archive."""

    def __init__(self, path: str):
        self.path = path
        logger.debug(f"Opening zip volume: {path}")
        try:
            self._zip = zipfile.ZipFile(path, 'r')
        except zipfile.BadZipFile as e:
            raise VolumeError(f"Not a readable zip volume: {path}: {e}")
        self._closed = False

    def __iter__(self) -> Iterator['ZipVolumeEntry']:
        if self._closed:
            raise VolumeStateError("Volume closed")
        return self._iter_entries()

    def _iter_entries(self) -> Iterator['ZipVolumeEntry']:
        for info in self._zip.infolist():
            if self._closed:
                raise VolumeStateError("Volume closed")
            yield ZipVolumeEntry(self._zip, info)

    def close(self):
        if self._closed:
            raise VolumeStateError("Volume already closed")
        logger.debug(f"Closing zip extractor: {self.path}")
        self._zip.close()
        self._closed = True


class ZipVolumeEntry(VolumeEntry):
    """An entry in a ZIP volume."""

    def __init__(self, zip_file: zipfile.ZipFile, info: zipfile.ZipInfo):
        self._zip = zip_file
        self._info = info

    @property
    def _mode(self) -> int:
        return self._info.external_attr >> 16

    @property
    def name(self) -> str:
        # directories in ZIP files end in /
        return self._info.filename.rstrip('/') if self.is_directory else self._info.filename

    @property
    def is_directory(self) -> bool:
        return self._info.is_dir()

    @property
    def is_symlink(self) -> bool:
        return stat.S_ISLNK(self._mode)

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
            self._extract_symlink(target)
        else:
            self._extract_regular_file(target)

    def _extract_symlink(self, target: str):
        logger.debug(f"Extracting symlink: {target}")
        link_target = self._zip.read(self._info).decode('utf-8')
        remove_path(target)
        os.symlink(link_target, target)

    def _extract_regular_file(self, target: str):
        logger.debug(f"Extracting file: {target}")
        # never write through an existing symlink or onto a directory
        if os.path.islink(target) or os.path.isdir(target):
            remove_path(target)
        with self._zip.open(self._info) as source, open(target, 'wb') as dest:
            shutil.copyfileobj(source, dest)
        permissions = stat.S_IMODE(self._mode)
        if permissions:
            os.chmod(target, permissions)
