"""Filesystem size and free-space queries."""

import logging
import os
import shutil
import stat
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class Filesystem(Protocol):
    """Metadata queries the orchestrator needs about local paths."""

    def directory_size(self, path: Path) -> int: ...

    def available_space(self, path: Path) -> int: ...

    def has_entries(self, path: Path) -> bool: ...


def nearest_existing(path: Path) -> Path:
    """Return ``path`` or its closest ancestor that exists."""
    candidate = Path(path).absolute()
    while not candidate.exists():
        if candidate.parent == candidate:
            break
        candidate = candidate.parent
    return candidate


class LocalFilesystem:
    """:class:`Filesystem` backed by ``os`` and ``shutil``."""

    def directory_size(self, path: Path) -> int:
        """
        Total bytes of regular files under ``path``, hidden files included.

        Raises
        ------
        OSError
            If a directory cannot be listed
        """

        def _raise(error: OSError) -> None:
            raise error

        total = 0
        for dirpath, _, filenames in os.walk(path, onerror=_raise):
            for name in filenames:
                st = os.lstat(os.path.join(dirpath, name))
                if stat.S_ISREG(st.st_mode):
                    total += st.st_size
        return total

    def available_space(self, path: Path) -> int:
        """
        Free bytes on the filesystem that holds, or would hold, ``path``.

        Paths that do not exist yet are measured at their nearest existing
        ancestor so nothing has to be created to answer.
        """
        target = nearest_existing(path)
        usage = shutil.disk_usage(target)
        logger.debug(f"Free space at {target}: {usage.free} bytes")
        return usage.free

    def has_entries(self, path: Path) -> bool:
        if not Path(path).is_dir():
            return False
        with os.scandir(path) as entries:
            return any(True for _ in entries)
