"""
Scopes decide which files under the home directory take part in a backup,
and under which name they are stored inside the volume.

Supports:
- DefaultBackupScope: the whole home directory minus well-known scratch dirs
- CustomScope: a configurable subdirectory with its own exclusions
- FilteringScope: suppresses specific volume names from being added
- IncrementalScope: only adds files modified after a cutoff time
- MultiScope: combines named sub-scopes under disjoint volume prefixes

add_files() and extract_files() use inverse path mappings, so a file added
under a scope extracts back to the same location relative to the root.
"""

import logging
import os
import stat
from abc import ABC, abstractmethod
from datetime import datetime
from fnmatch import fnmatchcase
from typing import Dict, Iterable, Iterator, List, Optional, Set

from .volume import (
    ForwardingVolumeCreator,
    ForwardingVolumeEntry,
    ForwardingVolumeExtractor,
    VolumeCreator,
    VolumeEntry,
    VolumeExtractor,
)

logger = logging.getLogger(__name__)


class ExistingFileMetadata:
    """
    Authoritative list of volume names that should exist after a restore.

    Every tracked name carries a restore decision:
    - None: not decided yet
    - True: restore the entry from the backup
    - False: keep the file already on disk

    If the metadata was built from an empty listing, nothing is tracked and
    every entry in the volume is considered. Views created by scoped() share
    the decisions of their parent and only add a name prefix.
    """

    def __init__(self, names: Iterable[str] = ()):
        self._decisions: Dict[str, Optional[bool]] = {name: None for name in names}
        self._tracking = bool(self._decisions)
        self._prefix = ''

    def scoped(self, prefix: str) -> 'ExistingFileMetadata':
        """Return a view on this metadata for names below the given prefix."""
        view = ExistingFileMetadata.__new__(ExistingFileMetadata)
        view._decisions = self._decisions
        view._tracking = self._tracking
        view._prefix = self._prefix + prefix
        return view

    @property
    def is_tracking(self) -> bool:
        return self._tracking

    def tracks(self, name: str) -> bool:
        """Whether an entry with the given name may be restored at all."""
        return not self._tracking or (self._prefix + name) in self._decisions

    def decision(self, name: str) -> Optional[bool]:
        return self._decisions.get(self._prefix + name)

    def should_restore(self, name: str, target_exists: bool, overwrite: bool) -> bool:
        """
        Decide whether the entry with the given name is extracted.

        An entry is restored if overwriting is requested or nothing exists at
        its target yet; that decision sticks for later volumes of the chain.
        Otherwise an earlier decision for the name is reused, and a first
        conflict keeps the existing file.
        """
        key = self._prefix + name
        if overwrite or not target_exists:
            self._decisions[key] = True
        elif self._decisions.get(key) is None:
            self._decisions[key] = False
        return self._decisions[key]

    def __contains__(self, name: str) -> bool:
        return (self._prefix + name) in self._decisions

    def __len__(self) -> int:
        return len(self._decisions)


class Scope(ABC):
    """Defines which files are part of a backup."""

    @abstractmethod
    def add_files(self, root: str, creator: VolumeCreator, existing_names: Set[str]):
        """
        Add all files of this scope to the volume.

        Args:
            root: Path of the home directory
            creator: Creator of the volume the files are added to
            existing_names: Receives the volume name of every visited file,
                which becomes the record of what exists for later restores
        """

    @abstractmethod
    def extract_files(self, root: str, extractor: VolumeExtractor, overwrite: bool,
                      existing_files: ExistingFileMetadata):
        """
        Extract all files of this scope from the volume below the root.

        Args:
            root: Path of the home directory
            extractor: Extractor of the volume to restore
            overwrite: Whether existing files should be replaced
            existing_files: Metadata of the files that should exist
        """


class ForwardingScope(Scope):
    """Scope that forwards all calls to a wrapped scope."""

    def __init__(self, scope: Scope):
        self._scope = scope

    def add_files(self, root: str, creator: VolumeCreator, existing_names: Set[str]):
        self._scope.add_files(root, creator, existing_names)

    def extract_files(self, root: str, extractor: VolumeExtractor, overwrite: bool,
                      existing_files: ExistingFileMetadata):
        self._scope.extract_files(root, extractor, overwrite, existing_files)


class ConfigurableScope(Scope):
    """A scope selectable through configuration, identified by its name."""

    @property
    @abstractmethod
    def scope_name(self) -> str:
        """
        Name of the scope, used as the directory prefix inside the volume,
        so it must be usable as a directory name.
        """


class DefaultBackupScope(ConfigurableScope):
    """The whole home directory, excluding scratch and cache directories."""

    # paths relative to the root; entries containing '*' are glob patterns
    EXCLUDED_PATHS = [
        'container-tmp',
        'garbage',
        # used by the backup/restore system itself
        'backup-tmp',
        '.restore.log',
        'lost+found',
        '.m2',
        'workspace',
        'war',
        'jobs/*/branches/*/workspace',
    ]

    @property
    def scope_name(self) -> str:
        return 'Default'

    def add_files(self, root: str, creator: VolumeCreator, existing_names: Set[str]):
        excluded = [os.path.join(root, path) for path in self.EXCLUDED_PATHS]
        add_all_files_in(root, creator, excluded, existing_names)

    def extract_files(self, root: str, extractor: VolumeExtractor, overwrite: bool,
                      existing_files: ExistingFileMetadata):
        extract_all_files_to(root, extractor, overwrite, existing_files)


class CustomScope(ConfigurableScope):
    """A subdirectory of the home directory with its own exclusions."""

    def __init__(self, filepath: str, scope_name: str, excluded_filepaths: Optional[List[str]] = None):
        """
        Args:
            filepath: Directory relative to the root
            scope_name: Name of the scope inside the volume
            excluded_filepaths: Paths relative to filepath that are skipped
        """
        self.filepath = filepath
        self._scope_name = scope_name
        self.excluded_filepaths = excluded_filepaths or []

    @property
    def scope_name(self) -> str:
        return self._scope_name

    def add_files(self, root: str, creator: VolumeCreator, existing_names: Set[str]):
        base_path = os.path.join(root, self.filepath)
        excluded = [os.path.join(base_path, path) for path in self.excluded_filepaths]
        add_all_files_in(base_path, creator, excluded, existing_names)

    def extract_files(self, root: str, extractor: VolumeExtractor, overwrite: bool,
                      existing_files: ExistingFileMetadata):
        extract_all_files_to(os.path.join(root, self.filepath), extractor, overwrite, existing_files)

    def __repr__(self):
        return f'<CustomScope {self._scope_name} path={self.filepath}>'


class FilteringScope(ForwardingScope):
    """
    Suppresses specific volume names from being added to the volume.

    The names are still recorded as existing files.
    """

    def __init__(self, scope: Scope, exclusions: Iterable[str] = ()):
        super().__init__(scope)
        self.exclusions = set(exclusions)

    def add_exclusion(self, exclusion: str):
        self.exclusions.add(exclusion)

    def add_files(self, root: str, creator: VolumeCreator, existing_names: Set[str]):
        super().add_files(root, _FilteringCreator(creator, self.exclusions), existing_names)


class _FilteringCreator(ForwardingVolumeCreator):

    def __init__(self, creator: VolumeCreator, exclusions: Set[str]):
        super().__init__(creator)
        self._exclusions = exclusions

    def add_file(self, file, name_in_volume, attrs=None):
        if name_in_volume in self._exclusions:
            logger.debug(f"Filtering excluded file: {name_in_volume}")
            return self.file_count
        return super().add_file(file, name_in_volume, attrs)


class IncrementalScope(ForwardingScope):
    """
    Only adds files that were modified strictly after the last backup.

    Selection is otherwise identical to the wrapped scope, and all files
    are still recorded as existing files.
    """

    def __init__(self, scope: Scope, last_backup_time: datetime):
        super().__init__(scope)
        self.last_backup_time = last_backup_time

    def add_files(self, root: str, creator: VolumeCreator, existing_names: Set[str]):
        cutoff = self.last_backup_time.timestamp()
        super().add_files(root, _ModifiedSinceCreator(creator, cutoff), existing_names)


class _ModifiedSinceCreator(ForwardingVolumeCreator):

    def __init__(self, creator: VolumeCreator, cutoff: float):
        super().__init__(creator)
        self._cutoff = cutoff

    def add_file(self, file, name_in_volume, attrs=None):
        if attrs is None:
            attrs = os.lstat(file)
        if attrs.st_mtime > self._cutoff:
            return super().add_file(file, name_in_volume, attrs)
        return self.file_count


class MultiScope(Scope):
    """
    Combines several scopes in one volume, each under its own name prefix.

    On backup the names emitted by a sub-scope are prefixed. On restore each
    sub-scope sees only the entries below its prefix, with the prefix
    stripped.
    """

    def __init__(self):
        self._sub_scopes: List[tuple] = []

    def add_sub_scope(self, scope: Scope, volume_prefix: str):
        """
        Args:
            scope: Scope to add
            volume_prefix: Prefix for all volume names of the scope, e.g. 'Default/'
        """
        self._sub_scopes.append((scope, volume_prefix))

    @property
    def sub_scopes(self) -> List[tuple]:
        return list(self._sub_scopes)

    def add_files(self, root: str, creator: VolumeCreator, existing_names: Set[str]):
        for scope, prefix in self._sub_scopes:
            sub_names: Set[str] = set()
            scope.add_files(root, _PrefixingCreator(creator, prefix), sub_names)
            existing_names.update(prefix + name for name in sub_names)

    def extract_files(self, root: str, extractor: VolumeExtractor, overwrite: bool,
                      existing_files: ExistingFileMetadata):
        for scope, prefix in self._sub_scopes:
            scope.extract_files(
                root,
                _SubScopeExtractor(extractor, prefix),
                overwrite,
                existing_files.scoped(prefix)
            )


class _PrefixingCreator(ForwardingVolumeCreator):

    def __init__(self, creator: VolumeCreator, prefix: str):
        super().__init__(creator)
        self._prefix = prefix

    def add_file(self, file, name_in_volume, attrs=None):
        return super().add_file(file, self._prefix + name_in_volume, attrs)


class _SubScopeExtractor(ForwardingVolumeExtractor):
    """Presents only the entries below a prefix, with the prefix stripped."""

    def __init__(self, extractor: VolumeExtractor, prefix: str):
        super().__init__(extractor)
        self._prefix = prefix

    def __iter__(self) -> Iterator[VolumeEntry]:
        for entry in super().__iter__():
            if entry.name.startswith(self._prefix) and len(entry.name) > len(self._prefix):
                yield _PrefixStrippedEntry(entry, len(self._prefix))


class _PrefixStrippedEntry(ForwardingVolumeEntry):

    def __init__(self, entry: VolumeEntry, prefix_length: int):
        super().__init__(entry)
        self._prefix_length = prefix_length

    @property
    def name(self) -> str:
        return super().name[self._prefix_length:]


class _Exclusions:
    """Excluded absolute paths; entries containing '*' are glob patterns."""

    def __init__(self, paths: Iterable[str]):
        self.paths = set()
        self.patterns = []
        for path in paths:
            path = os.path.normpath(os.path.abspath(path))
            if '*' in path:
                self.patterns.append(path)
            else:
                self.paths.add(path)

    def matches(self, path: str) -> bool:
        if path in self.paths:
            return True
        return any(fnmatchcase(path, pattern) for pattern in self.patterns)


def _volume_name(base_path: str, path: str) -> str:
    return os.path.relpath(path, base_path).replace(os.sep, '/')


def add_all_files_in(base_path: str, creator: VolumeCreator, excluded_paths: Iterable[str],
                     existing_names: Set[str]):
    """
    Add all files below base_path to the volume.

    Symlinked directories are not followed but stored as symlinks. Empty
    directories are added explicitly, otherwise they would be lost. Every
    added name is also recorded in existing_names.

    Args:
        base_path: Directory whose contents are added
        creator: Creator of the volume
        excluded_paths: Absolute paths of files/directories to skip
        existing_names: Receives the volume names of all visited files
    """
    base_path = os.path.normpath(os.path.abspath(base_path))
    exclusions = _Exclusions(excluded_paths)

    if not os.path.isdir(base_path):
        logger.warning(f"Scope directory does not exist, nothing to add: {base_path}")
        return

    def visit(directory: str):
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda e: e.name)

        if not entries and directory != base_path:
            name = _volume_name(base_path, directory)
            logger.debug(f"Adding empty directory: {directory}")
            existing_names.add(name)
            creator.add_file(directory, name, os.lstat(directory))
            return

        for entry in entries:
            path = entry.path
            if exclusions.matches(path):
                logger.debug(f"Skipping excluded path: {path}")
                continue
            if entry.is_dir(follow_symlinks=False):
                visit(path)
                continue
            attrs = entry.stat(follow_symlinks=False)
            if not (stat.S_ISREG(attrs.st_mode) or stat.S_ISLNK(attrs.st_mode)):
                # pipes, sockets and devices cannot be read like files
                logger.warning(f"Skipping special file: {path}")
                continue
            name = _volume_name(base_path, path)
            existing_names.add(name)
            creator.add_file(path, name, attrs)

    visit(base_path)


def _is_safe_name(name: str) -> bool:
    parts = name.split('/')
    return not name.startswith('/') and '..' not in parts and '' not in parts


def extract_all_files_to(target_dir: str, extractor: VolumeExtractor, overwrite: bool,
                         existing_files: ExistingFileMetadata):
    """
    Extract all entries of the volume below target_dir.

    Entries missing from tracking metadata are skipped, so stale entries of
    old volumes do not reappear. See ExistingFileMetadata.should_restore()
    for how conflicts with existing files are resolved.

    Args:
        target_dir: Directory the entries are extracted to
        extractor: Extractor of the volume
        overwrite: Whether existing files should be replaced
        existing_files: Metadata of the files that should exist
    """
    for entry in extractor:
        name = entry.name
        if not _is_safe_name(name):
            logger.warning(f"Refusing to extract entry outside of target directory: {name}")
            continue
        if not existing_files.tracks(name):
            logger.debug(f"Entry has no counterpart in list of existing files, skipping: {name}")
            continue

        target = os.path.join(target_dir, *name.split('/'))
        if existing_files.should_restore(name, os.path.lexists(target), overwrite):
            entry.extract_to(target, overwrite=True)
        else:
            logger.debug(f"Keeping existing file: {target}")
