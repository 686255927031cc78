"""Version marker of the home directory, kept in the 'upgrade-version' file."""

import logging
import os
from typing import Optional

from .storage import VERSION_COMMENT, VERSION_FILE, format_manifest, parse_manifest

logger = logging.getLogger(__name__)


def get_file_system_version(root: str) -> Optional[str]:
    """
    Read the version marker of the given directory.

    Args:
        root: Home directory

    Returns:
        The recorded version, or None if no version is recorded
    """
    path = os.path.join(root, VERSION_FILE)
    if not os.path.isfile(path):
        return None

    with open(path, 'r', encoding='utf-8') as f:
        lines = parse_manifest(f.read())

    return lines[-1] if lines else None


def update_file_system_version(directory: str, version: str):
    """Write the version marker into the given directory."""
    path = os.path.join(directory, VERSION_FILE)
    logger.debug(f"Writing version {version} to {path}")

    with open(path, 'w', encoding='utf-8') as f:
        f.write(format_manifest(VERSION_COMMENT, [version]))
