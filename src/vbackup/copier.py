"""
Bulk copy services.

The orchestrator only needs ``copy(source_root, destination_root) -> bool``;
it never trusts the result beyond that and verifies content itself.
"""

import asyncio
import contextlib
import logging
import os
import shlex
import shutil
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

import aiofiles

from .errors import PreconditionError
from .hashing import BUFFER_SIZE

logger = logging.getLogger(__name__)


class Copier(Protocol):
    """Copies the contents of one directory into another."""

    def ensure_available(self) -> None: ...

    async def copy(self, source_root: Path, destination_root: Path) -> bool: ...


# ============================================================================
# rsync
# ============================================================================


class RsyncCopier:
    """
    Delegate the copy to ``rsync -a``.

    Parameters
    ----------
    rsync_path : str, default="rsync"
        rsync executable
    extra_args : Sequence[str], default=()
        Additional arguments placed before the source and destination
    """

    def __init__(self, rsync_path: str = "rsync", extra_args: Sequence[str] = ()):
        self.rsync_path = rsync_path
        self.extra_args = tuple(extra_args)

    def ensure_available(self) -> None:
        if shutil.which(self.rsync_path) is None:
            raise PreconditionError(f"rsync is not installed or not in PATH: {self.rsync_path}")

    def command(self, source_root: Path, destination_root: Path) -> list[str]:
        # Trailing slashes copy the contents, not the directory itself
        return [
            self.rsync_path,
            "-a",
            "--human-readable",
            *self.extra_args,
            f"{source_root}/",
            f"{destination_root}/",
        ]

    async def copy(self, source_root: Path, destination_root: Path) -> bool:
        cmd = self.command(source_root, destination_root)
        logger.info(f"Copying files from {source_root} to {destination_root}")
        logger.debug(f"Command: {shlex.join(cmd)}")

        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        async for raw_line in process.stdout:
            line = raw_line.decode(errors="replace").rstrip()
            if line:
                logger.debug(f"[rsync] {line}")

        returncode = await process.wait()
        if returncode != 0:
            logger.error(f"rsync exited with status {returncode}")
            return False

        logger.info("Files copied successfully")
        return True


# ============================================================================
# In-process streaming copy
# ============================================================================


class StreamingCopier:
    """
    Copy a tree in-process with aiofiles.

    Each file is written to ``<name>.tmp`` and atomically renamed into place,
    then its timestamps and permission bits are copied from the source.
    Symbolic links are recreated as links.

    Parameters
    ----------
    buffer_size : int, default=BUFFER_SIZE
        Read/write chunk size
    """

    def __init__(self, buffer_size: int = BUFFER_SIZE):
        if buffer_size <= 0:
            raise ValueError(f"Buffer size must be positive, got {buffer_size}")
        self.buffer_size = buffer_size

    def ensure_available(self) -> None:
        return None

    async def copy(self, source_root: Path, destination_root: Path) -> bool:
        source_root = Path(source_root)
        destination_root = Path(destination_root)
        logger.info(f"Copying files from {source_root} to {destination_root}")

        files_copied = 0
        try:
            for dirpath, dirnames, filenames in os.walk(source_root):
                current = Path(dirpath)
                target_dir = destination_root / current.relative_to(source_root)
                target_dir.mkdir(parents=True, exist_ok=True)

                for name in list(dirnames):
                    if (current / name).is_symlink():
                        dirnames.remove(name)
                        self._copy_symlink(current / name, target_dir / name)
                dirnames.sort()

                for name in sorted(filenames):
                    source = current / name
                    target = target_dir / name
                    if source.is_symlink():
                        self._copy_symlink(source, target)
                    elif source.is_file():
                        await self._copy_file(source, target)
                        files_copied += 1
                    else:
                        logger.debug(f"Skipping special file: {source}")
        except OSError as e:
            logger.error(f"Copy failed: {e}")
            return False

        logger.info(f"Copied {files_copied} file(s)")
        return True

    def _copy_symlink(self, source: Path, target: Path) -> None:
        if target.is_symlink() or target.exists():
            target.unlink()
        os.symlink(os.readlink(source), target)

    async def _copy_file(self, source: Path, target: Path) -> None:
        temp_path = target.with_suffix(target.suffix + ".tmp")
        try:
            async with aiofiles.open(source, "rb") as f_source:
                async with aiofiles.open(temp_path, "wb") as f_dest:
                    while chunk := await f_source.read(self.buffer_size):
                        await f_dest.write(chunk)
            temp_path.replace(target)
        except OSError:
            with contextlib.suppress(OSError):
                temp_path.unlink()
            raise
        shutil.copystat(source, target)
        logger.debug(f"Copied: {source} -> {target}")
