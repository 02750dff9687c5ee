"""Fingerprint comparison."""

from .errors import DuplicateKeyError
from .models import DivergenceReport, Fingerprint


def _index(fingerprint: Fingerprint) -> dict[str, str]:
    """Map path to hash, refusing to silently drop duplicate keys."""
    lookup: dict[str, str] = {}
    for entry in fingerprint.entries:
        if entry.relative_path in lookup:
            raise DuplicateKeyError(entry.relative_path)
        lookup[entry.relative_path] = entry.content_hash
    return lookup


def compare(source: Fingerprint, destination: Fingerprint) -> DivergenceReport:
    """
    Classify how ``destination`` diverges from ``source``.

    Parameters
    ----------
    source : Fingerprint
        Fingerprint of the tree that was copied
    destination : Fingerprint
        Fingerprint of the copy

    Returns
    -------
    DivergenceReport
        Disjoint missing / extra / mismatched path sets

    Raises
    ------
    DuplicateKeyError
        If either fingerprint holds the same key twice
    ValueError
        If the fingerprints were hashed with different algorithms
    """
    if source.algorithm != destination.algorithm:
        raise ValueError(
            f"Cannot compare {source.algorithm} fingerprint with "
            f"{destination.algorithm} fingerprint"
        )

    source_hashes = _index(source)
    destination_hashes = _index(destination)

    source_keys = source_hashes.keys()
    destination_keys = destination_hashes.keys()

    missing = source_keys - destination_keys
    extra = destination_keys - source_keys
    mismatched = {
        path
        for path in source_keys & destination_keys
        if source_hashes[path] != destination_hashes[path]
    }

    return DivergenceReport(
        missing=frozenset(missing),
        extra=frozenset(extra),
        mismatched=frozenset(mismatched),
    )


def format_report(report: DivergenceReport) -> list[str]:
    """
    Render a divergence report as log lines.

    Returns
    -------
    list[str]
        Summary line followed by one section per non-empty bucket
    """
    if report.is_clean():
        return ["All files match"]

    lines = [
        f"{report.total} divergent path(s): "
        f"{len(report.missing)} missing, "
        f"{len(report.extra)} extra, "
        f"{len(report.mismatched)} mismatched"
    ]
    sections = (
        ("Files present in source but missing in destination:", report.missing),
        ("Files present in destination but missing in source:", report.extra),
        ("Files with mismatched hashes:", report.mismatched),
    )
    for title, paths in sections:
        if paths:
            lines.append(title)
            lines.extend(f"  {path}" for path in sorted(paths))
    return lines
