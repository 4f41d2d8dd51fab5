"""Directory canonicalization and filesystem probes used by the catalog.

Every directory the catalog stores or compares goes through
``canonicalize_dir`` first. The probes only ever *look* at the disk; the
downloader is the one that creates directories and marker files.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Union

from tmd_catalog.config import MARKER_FILE_NAME

PathLike = Union[str, "os.PathLike[str]"]

# Errors that mean "nothing is there" rather than "could not look".
_ABSENT_ERRORS = (FileNotFoundError, NotADirectoryError)


def canonicalize_dir(directory: PathLike) -> str:
    """Return the absolute, normalized form of ``directory``.

    Relative paths are anchored at the current working directory. Symlinks
    are not resolved, so a linked download root keeps the name the user gave
    it. Case is preserved; the store compares directories case-insensitively.
    """
    raw = os.fspath(directory)
    if not raw:
        raise ValueError("directory cannot be empty")
    return os.path.abspath(raw)


def _exists(path: Path) -> bool:
    try:
        path.stat()
    except _ABSENT_ERRORS:
        return False
    return True


def directory_exists(directory: PathLike) -> bool:
    """True when something exists at ``directory``.

    Permission problems and other I/O failures propagate.
    """
    return _exists(Path(directory))


def has_marker(directory: PathLike, marker_name: str = MARKER_FILE_NAME) -> bool:
    """True when the marker file sits directly inside ``directory``."""
    return _exists(Path(directory) / marker_name)
