"""Exception hierarchy for backup jobs."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import CapacityPlan, DivergenceReport


class BackupError(Exception):
    """Base class for every failure a transfer job can report."""


class PreconditionError(BackupError):
    """Input is unusable; nothing has been touched yet."""


class EmptyTreeError(PreconditionError):
    """A directory that must contain files has none."""


class DuplicateKeyError(ValueError):
    """
    Two files map to the same key within one fingerprint.

    Parameters
    ----------
    key : str
        The colliding fingerprint key
    paths : list[str]
        Every relative path that produced ``key``
    """

    def __init__(self, key: str, paths: list[str] | None = None):
        self.key = key
        self.paths = sorted(paths or [])
        detail = f": {', '.join(self.paths)}" if self.paths else ""
        super().__init__(f"Duplicate fingerprint key '{key}'{detail}")


class CapacityError(BackupError):
    """The destination does not have room for the planned copy."""

    def __init__(self, message: str, plan: "CapacityPlan"):
        super().__init__(message)
        self.plan = plan


class ProvisioningError(BackupError):
    """Container creation or mount failed."""


class CopyError(BackupError):
    """The bulk copy service reported failure."""


class VerificationError(BackupError):
    """
    Destination content does not match the source.

    Parameters
    ----------
    report : DivergenceReport | None
        Classification of the divergent paths, None when the destination
        could not be fingerprinted at all
    message : str | None
        Overrides the summary derived from ``report``
    """

    def __init__(self, report: "DivergenceReport | None", message: str | None = None):
        self.report = report
        if message is None and report is not None:
            message = (
                "Hash verification failed: "
                f"{len(report.missing)} missing, "
                f"{len(report.extra)} extra, "
                f"{len(report.mismatched)} mismatched"
            )
        super().__init__(message or "Hash verification failed")
