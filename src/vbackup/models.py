"""
Data models shared by the fingerprinting, comparison and transfer layers.

Everything here is plain data: the Fingerprinter, Comparator and Capacity
Planner produce these objects and the Orchestrator owns the only mutable one,
``TransferJob``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from fractions import Fraction
from pathlib import Path


# ============================================================================
# Enumerations
# ============================================================================


class FingerprintMode(Enum):
    """
    How fingerprint keys are derived from file locations.

    Attributes
    ----------
    PATH : str
        Key is the path relative to the fingerprinted root
    BASENAME : str
        Key is the file name alone, directory structure discarded
    """

    PATH = "path"
    BASENAME = "basename"


class Phase(Enum):
    """
    Position of a transfer job in the commit/rollback state machine.

    Attributes
    ----------
    PLANNED : str
        Source fingerprinted and capacity checked
    PROVISIONED : str
        Container created and mounted
    COPIED : str
        Copy service finished successfully
    VERIFIED : str
        Destination fingerprinted and compared
    COMMITTED : str
        Terminal success, destination is authoritative
    ROLLED_BACK : str
        Terminal failure, destination purged
    FAILED : str
        Terminal failure before any destination state was created
    SKIPPED : str
        Terminal, an existing container was left alone on request
    """

    PLANNED = "planned"
    PROVISIONED = "provisioned"
    COPIED = "copied"
    VERIFIED = "verified"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_PHASES


_TERMINAL_PHASES = frozenset(
    {Phase.COMMITTED, Phase.ROLLED_BACK, Phase.FAILED, Phase.SKIPPED}
)

_TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.PLANNED: frozenset(
        {
            Phase.PROVISIONED,
            Phase.COPIED,
            Phase.VERIFIED,
            Phase.ROLLED_BACK,
            Phase.FAILED,
            Phase.SKIPPED,
        }
    ),
    Phase.PROVISIONED: frozenset({Phase.COPIED, Phase.ROLLED_BACK}),
    Phase.COPIED: frozenset({Phase.VERIFIED, Phase.ROLLED_BACK}),
    Phase.VERIFIED: frozenset({Phase.COMMITTED, Phase.ROLLED_BACK}),
}


# ============================================================================
# Fingerprints
# ============================================================================


@dataclass(frozen=True)
class FileEntry:
    """
    One fingerprinted file.

    Attributes
    ----------
    relative_path : str
        POSIX path relative to the fingerprinted root, or the bare file name
        in basename mode
    content_hash : str
        Hex digest of the file content
    """

    relative_path: str
    content_hash: str


@dataclass(frozen=True)
class Fingerprint:
    """
    Content snapshot of one directory tree.

    Entries are kept sorted by path so output is reproducible, but the
    fingerprint is compared as a set of ``(path, hash)`` pairs.

    Attributes
    ----------
    root : Path
        Directory that was fingerprinted
    entries : tuple[FileEntry, ...]
        Fingerprinted files, sorted by relative path
    mode : FingerprintMode
        Key derivation used for ``entries``
    algorithm : str
        Hash algorithm of every ``content_hash``
    captured_at : datetime
        UTC time the walk started
    total_bytes : int
        Bytes hashed to produce the fingerprint
    """

    root: Path
    entries: tuple[FileEntry, ...] = ()
    mode: FingerprintMode = FingerprintMode.PATH
    algorithm: str = "sha256"
    captured_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc), compare=False
    )
    total_bytes: int = 0

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    @property
    def paths(self) -> list[str]:
        return [entry.relative_path for entry in self.entries]

    def as_mapping(self) -> dict[str, str]:
        """Return ``{relative_path: content_hash}``."""
        return {entry.relative_path: entry.content_hash for entry in self.entries}

    def pairs(self) -> frozenset[tuple[str, str]]:
        return frozenset(
            (entry.relative_path, entry.content_hash) for entry in self.entries
        )


@dataclass(frozen=True)
class DivergenceReport:
    """
    Differences between a source and a destination fingerprint.

    Attributes
    ----------
    missing : frozenset[str]
        Paths in the source but not in the destination
    extra : frozenset[str]
        Paths in the destination but not in the source
    mismatched : frozenset[str]
        Paths in both with different content hashes
    """

    missing: frozenset[str] = frozenset()
    extra: frozenset[str] = frozenset()
    mismatched: frozenset[str] = frozenset()

    def is_clean(self) -> bool:
        return not (self.missing or self.extra or self.mismatched)

    @property
    def total(self) -> int:
        return len(self.missing) + len(self.extra) + len(self.mismatched)

    def paths(self) -> frozenset[str]:
        return self.missing | self.extra | self.mismatched


# ============================================================================
# Planning and job state
# ============================================================================


@dataclass(frozen=True)
class CapacityPlan:
    """
    Outcome of a free-space check.

    Attributes
    ----------
    source_size_bytes : int
        Bytes of data to be copied
    overhead_bytes : int
        Fixed allowance for container or filesystem metadata
    margin_ratio : Fraction
        Proportional headroom demanded on top of data plus overhead
    required_bytes : int
        Space the destination must have free
    available_bytes : int
        Space the destination reports as free
    sufficient : bool
        Whether ``available_bytes >= required_bytes``
    """

    source_size_bytes: int
    overhead_bytes: int
    margin_ratio: Fraction
    required_bytes: int
    available_bytes: int
    sufficient: bool

    @property
    def shortfall_bytes(self) -> int:
        return max(0, self.required_bytes - self.available_bytes)


@dataclass
class TransferJob:
    """
    Unit of work owned by the transfer orchestrator.

    Only the orchestrator calls :meth:`advance`; every other component treats
    the job as read-only.
    """

    source_root: Path
    destination_root: Path
    phase: Phase = Phase.PLANNED
    container_path: Path | None = None
    mount_point: Path | None = None
    source_fingerprint: Fingerprint | None = None
    destination_fingerprint: Fingerprint | None = None
    divergence: DivergenceReport | None = None
    capacity: CapacityPlan | None = None
    history: list[Phase] = field(default_factory=lambda: [Phase.PLANNED])

    def advance(self, phase: Phase) -> None:
        """
        Move the job to ``phase``.

        Raises
        ------
        RuntimeError
            If the transition is not allowed from the current phase
        """
        allowed = _TRANSITIONS.get(self.phase, frozenset())
        if phase not in allowed:
            raise RuntimeError(
                f"Illegal transition {self.phase.value} -> {phase.value}"
            )
        self.phase = phase
        self.history.append(phase)

    @property
    def copy_target(self) -> Path:
        """Directory the files are copied into: the mount point for containers."""
        return self.mount_point or self.destination_root

    @property
    def verified_clean(self) -> bool:
        return self.divergence is not None and self.divergence.is_clean()
