"""
Encrypted container lifecycle via the VeraCrypt command line.

The engine only needs to know whether each step succeeded. Passwords are
passed on stdin, never on the command line.
"""

import logging
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Protocol

from .config import Credentials
from .errors import PreconditionError

logger = logging.getLogger(__name__)

_FILESYSTEM_NAMES = {
    "ext4": "ext4",
    "exfat": "exFAT",
    "ntfs": "NTFS",
    "fat": "FAT",
}


class ContainerService(Protocol):
    """Creates, mounts and unmounts file-backed encrypted volumes."""

    def ensure_available(self) -> None: ...

    def create(self, path: Path, size_bytes: int, credentials: Credentials) -> bool: ...

    def mount(self, path: Path, mount_point: Path, credentials: Credentials) -> bool: ...

    def unmount(self, mount_point: Path) -> bool: ...


class VeraCryptContainer:
    """
    :class:`ContainerService` driving ``veracrypt --text``.

    Parameters
    ----------
    executable : str, default="veracrypt"
        VeraCrypt binary
    filesystem : str, default="ext4"
        Filesystem formatted inside new containers
    encryption : str, default="AES"
        Cipher for new containers
    hash_name : str, default="SHA-512"
        Header key derivation hash for new containers
    """

    def __init__(
        self,
        executable: str = "veracrypt",
        filesystem: str = "ext4",
        encryption: str = "AES",
        hash_name: str = "SHA-512",
    ):
        if filesystem.lower() not in _FILESYSTEM_NAMES:
            raise ValueError(f"Unsupported container filesystem: {filesystem}")
        self.executable = executable
        self.filesystem = _FILESYSTEM_NAMES[filesystem.lower()]
        self.encryption = encryption
        self.hash_name = hash_name

    def ensure_available(self) -> None:
        location = shutil.which(self.executable)
        if location is None:
            raise PreconditionError("VeraCrypt is not installed or not in PATH")
        logger.info(f"VeraCrypt is installed: {location}")

    def create(self, path: Path, size_bytes: int, credentials: Credentials) -> bool:
        logger.info(f"Creating VeraCrypt container: {path} ({size_bytes} bytes, {self.filesystem})")
        cmd = [
            self.executable,
            "--text",
            "--non-interactive",
            "--create",
            str(path),
            "--volume-type=normal",
            f"--size={size_bytes}",
            f"--encryption={self.encryption}",
            f"--hash={self.hash_name}",
            f"--filesystem={self.filesystem}",
            "--random-source=/dev/urandom",
            *self._auth_args(credentials),
        ]
        return self._run(cmd, credentials.password)

    def mount(self, path: Path, mount_point: Path, credentials: Credentials) -> bool:
        logger.info(f"Mounting VeraCrypt container to: {mount_point}")
        cmd = [
            self.executable,
            "--text",
            "--non-interactive",
            "--protect-hidden=no",
            *self._auth_args(credentials),
            str(path),
            str(mount_point),
        ]
        return self._run(cmd, credentials.password)

    def unmount(self, mount_point: Path) -> bool:
        logger.info(f"Dismounting VeraCrypt container from: {mount_point}")
        cmd = [
            self.executable,
            "--text",
            "--non-interactive",
            "--dismount",
            str(mount_point),
        ]
        return self._run(cmd, None)

    # ------------------------------------------------------------------------
    # Internal methods
    # ------------------------------------------------------------------------

    def _auth_args(self, credentials: Credentials) -> list[str]:
        args = ["--pim=0"]
        keyfiles = ",".join(str(keyfile) for keyfile in credentials.keyfiles)
        args.append(f"--keyfiles={keyfiles}")
        if credentials.password:
            args.append("--stdin")
        else:
            args.append("--password=")
        return args

    def _run(self, cmd: list[str], password: str | None) -> bool:
        logger.debug(f"Command: {shlex.join(cmd)}")
        try:
            completed = subprocess.run(
                cmd,
                input=password,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            logger.error(f"Failed to run {self.executable}: {e}")
            return False

        if completed.returncode != 0:
            detail = (completed.stderr or completed.stdout or "").strip()
            logger.error(f"{self.executable} exited with status {completed.returncode}: {detail}")
            return False
        return True
