"""Configuration for transfer jobs."""

import argparse
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from fractions import Fraction
from pathlib import Path

from .capacity import (
    ALLOCATION_UNIT,
    CONTAINER_MARGIN,
    CONTAINER_OVERHEAD_BYTES,
    DIRECTORY_MARGIN,
    MIB,
    as_ratio,
)
from .errors import PreconditionError
from .hashing import DEFAULT_ALGORITHM, SUPPORTED_ALGORITHMS
from .models import FingerprintMode

PASSWORD_ENV = "VERACRYPT_PASSWORD"
KEYFILES_ENV = "VERACRYPT_KEYFILES"
CONTAINER_FILESYSTEMS = ("ext4", "exfat", "ntfs", "fat")


class ExistingPolicy(Enum):
    """What to do when the target container file already exists."""

    FAIL = "fail"
    OVERWRITE = "overwrite"
    SKIP = "skip"


def split_keyfiles(value: str | None) -> tuple[Path, ...]:
    """Split a comma-separated keyfile list, trimming whitespace."""
    if not value:
        return ()
    return tuple(Path(part.strip()) for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class Credentials:
    """
    Secrets for a container: a password, keyfiles, or both layered.

    Attributes
    ----------
    password : str | None
        Container password
    keyfiles : tuple[Path, ...]
        Keyfiles applied in order
    """

    password: str | None = None
    keyfiles: tuple[Path, ...] = ()

    def __repr__(self) -> str:
        masked = "***" if self.password else None
        return f"Credentials(password={masked!r}, keyfiles={self.keyfiles!r})"

    @property
    def layered(self) -> bool:
        return bool(self.password) and bool(self.keyfiles)

    def describe(self) -> str:
        if self.layered:
            return f"layered authentication (password + {len(self.keyfiles)} keyfile(s))"
        if self.password:
            return "password authentication"
        return f"keyfile authentication ({len(self.keyfiles)} keyfile(s))"

    def validate(self) -> None:
        """
        Check that some credential is present and every keyfile is a file.

        Raises
        ------
        PreconditionError
            If no credential is given or a keyfile is missing or a directory
        """
        if not self.password and not self.keyfiles:
            raise PreconditionError(
                "Either a password or a keyfile (or both) must be provided"
            )
        for keyfile in self.keyfiles:
            if keyfile.is_dir():
                raise PreconditionError(f"Keyfile cannot be a directory: {keyfile}")
            if not keyfile.is_file():
                raise PreconditionError(f"Keyfile does not exist: {keyfile}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "Credentials":
        """Read ``VERACRYPT_PASSWORD`` and ``VERACRYPT_KEYFILES`` from ``environ``."""
        return cls(
            password=environ.get(PASSWORD_ENV) or None,
            keyfiles=split_keyfiles(environ.get(KEYFILES_ENV)),
        )


@dataclass
class TransferConfig:
    """
    Everything that varies between backup workflows.

    Attributes
    ----------
    fingerprint_mode : FingerprintMode
        Key derivation used for both source and destination fingerprints
    include_hidden : bool
        Whether dot-prefixed entries are fingerprinted
    overhead_bytes : int
        Fixed allowance added to the source size
    margin_ratio : Fraction
        Proportional headroom demanded by the free-space check
    use_container : bool
        Copy into a freshly created encrypted container
    credentials : Credentials | None
        Container secrets, required when ``use_container`` is set
    hash_algorithm : str
        Algorithm for fingerprints
    workers : int
        Files hashed concurrently
    existing_policy : ExistingPolicy
        Handling of a container file that already exists
    allow_existing : bool
        Permit copying into a destination directory that already holds files
    container_name : str | None
        Base name of the container file, defaults to the source directory name
    timestamp_format : str
        strftime pattern appended to the container name
    mount_point : Path | None
        Where to mount the container, defaults to a fresh temporary directory
    filesystem : str
        Filesystem created inside the container
    allocation_unit : int
        Container sizes are rounded up to a multiple of this
    """

    fingerprint_mode: FingerprintMode = FingerprintMode.PATH
    include_hidden: bool = False
    overhead_bytes: int = 0
    margin_ratio: Fraction = DIRECTORY_MARGIN
    use_container: bool = False
    credentials: Credentials | None = None
    hash_algorithm: str = DEFAULT_ALGORITHM
    workers: int = 4
    existing_policy: ExistingPolicy = ExistingPolicy.FAIL
    allow_existing: bool = False
    container_name: str | None = None
    timestamp_format: str = "%Y%m%d_%H%M%S"
    mount_point: Path | None = None
    filesystem: str = "ext4"
    allocation_unit: int = ALLOCATION_UNIT

    def __post_init__(self):
        """Validate configuration."""
        self.margin_ratio = as_ratio(self.margin_ratio)

        if self.overhead_bytes < 0:
            raise ValueError(f"Overhead must be non-negative, got {self.overhead_bytes}")
        if self.workers <= 0:
            raise ValueError(f"Worker count must be positive, got {self.workers}")
        if self.allocation_unit <= 0:
            raise ValueError(
                f"Allocation unit must be positive, got {self.allocation_unit}"
            )

        if self.hash_algorithm.lower() not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Invalid hash algorithm: {self.hash_algorithm}")
        self.hash_algorithm = self.hash_algorithm.lower()

        self.filesystem = self.filesystem.lower()
        if self.filesystem not in CONTAINER_FILESYSTEMS:
            raise ValueError(f"Unsupported container filesystem: {self.filesystem}")

        if self.container_name is not None:
            self.container_name = self.container_name.replace(" ", "-")

    @classmethod
    def for_directory(cls, **overrides) -> "TransferConfig":
        """Preset for a directory-to-directory copy."""
        options = dict(
            fingerprint_mode=FingerprintMode.PATH,
            include_hidden=False,
            overhead_bytes=0,
            margin_ratio=DIRECTORY_MARGIN,
            use_container=False,
        )
        options.update(overrides)
        return cls(**options)

    @classmethod
    def for_container(cls, credentials: Credentials, **overrides) -> "TransferConfig":
        """Preset for a copy into a new encrypted container."""
        options = dict(
            fingerprint_mode=FingerprintMode.PATH,
            include_hidden=True,
            overhead_bytes=CONTAINER_OVERHEAD_BYTES,
            margin_ratio=CONTAINER_MARGIN,
            use_container=True,
            credentials=credentials,
        )
        options.update(overrides)
        return cls(**options)

    @classmethod
    def from_args(
        cls, args: argparse.Namespace, environ: Mapping[str, str] | None = None
    ) -> "TransferConfig":
        """
        Create config from command-line arguments.

        Parameters
        ----------
        args : argparse.Namespace
            Parsed arguments of any sub-command
        environ : Mapping[str, str] | None
            Environment consulted for container credentials not given as flags
        """
        mode = FingerprintMode.BASENAME if args.flat else FingerprintMode.PATH
        common = dict(
            fingerprint_mode=mode,
            hash_algorithm=args.hash_algorithm,
            workers=args.workers,
        )

        if args.command == "container":
            env_credentials = Credentials.from_env(environ or {})
            credentials = Credentials(
                password=args.password or env_credentials.password,
                keyfiles=split_keyfiles(args.keyfile) or env_credentials.keyfiles,
            )
            if args.force:
                policy = ExistingPolicy.OVERWRITE
            elif args.skip:
                policy = ExistingPolicy.SKIP
            else:
                policy = ExistingPolicy.FAIL
            return cls.for_container(
                credentials,
                include_hidden=not args.exclude_hidden,
                overhead_bytes=args.overhead_mib * MIB,
                existing_policy=policy,
                container_name=args.container_name,
                timestamp_format=args.timestamp_format,
                mount_point=args.mount_point,
                filesystem=args.filesystem,
                **common,
            )

        if args.command == "backup":
            return cls.for_directory(
                include_hidden=args.include_hidden,
                margin_ratio=args.margin,
                allow_existing=args.allow_existing,
                **common,
            )

        return cls.for_directory(include_hidden=args.include_hidden, **common)
