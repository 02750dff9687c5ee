"""
Command-line interface for vbackup.

Presentation only: argument parsing, logging setup and rendering of the
events and result produced by :class:`TransferOrchestrator`.
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from .capacity import CONTAINER_OVERHEAD_BYTES, MIB, format_size
from .compare import format_report
from .config import CONTAINER_FILESYSTEMS, TransferConfig
from .copier import Copier, RsyncCopier, StreamingCopier
from .hashing import DEFAULT_ALGORITHM, SUPPORTED_ALGORITHMS
from .orchestrator import EventType, TransferOrchestrator, TransferResult

logger = logging.getLogger(__name__)


# ============================================================================
# CLI Layer (Presentation)
# ============================================================================


class CLIProcessor:
    """
    Drive one orchestrator run and print its progress.

    Parameters
    ----------
    orchestrator : TransferOrchestrator
        Configured job runner
    verify_only : bool, default=False
        Run the verification workflow instead of copy-and-verify
    """

    def __init__(self, orchestrator: TransferOrchestrator, verify_only: bool = False):
        self.orchestrator = orchestrator
        self.verify_only = verify_only

    async def run(self) -> TransferResult:
        """
        Consume events until the final result arrives.

        Returns
        -------
        TransferResult
            Outcome of the job
        """
        stream = self.orchestrator.verify() if self.verify_only else self.orchestrator.run()

        result = None
        async for event in stream:
            if isinstance(event, TransferResult):
                result = event
                break
            self._show_event(event)

        self._show_result_summary(result)
        return result

    def _show_event(self, event) -> None:
        if event.type == EventType.FINGERPRINT_COMPLETE:
            print(f"  {event.message} ({format_size(event.total_bytes)})")
        elif event.type == EventType.CAPACITY_CHECKED:
            print(
                f"  Required {format_size(event.bytes_processed)}, "
                f"available {format_size(event.total_bytes)}"
            )
        elif event.type == EventType.COPY_START:
            print(f"\n{event.message} ({format_size(event.total_bytes)})")
        elif event.type == EventType.ROLLBACK_START:
            print(f"\n✗ {event.message}")
        else:
            print(f"[{event.phase.value}] {event.message}")

    def _show_result_summary(self, result: TransferResult) -> None:
        print("\n" + "=" * 60)
        job = result.job

        if result.success:
            location = job.container_path or job.destination_root
            print(f"✓ {job.phase.value.replace('_', ' ').capitalize()} ({result.duration:.1f}s)")
            print(f"  Location: {location}")
            return

        print(f"✗ Failed ({job.phase.value.replace('_', ' ')})")
        if result.error is not None:
            print(f"  {result.error}")
        if result.report is not None and not result.report.is_clean():
            for line in format_report(result.report):
                print(f"  {line}")
        for message in result.rollback_errors:
            print(f"  ! {message}")


# ============================================================================
# Main Entry Point
# ============================================================================


def setup_logging(verbose: bool = False) -> None:
    """
    Configure logging for the application.

    Parameters
    ----------
    verbose : bool
        Enable verbose logging
    """
    log_level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=log_level,
        format="%(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def build_parser() -> argparse.ArgumentParser:
    """
    Build the argument parser with its three sub-commands.

    Returns
    -------
    argparse.ArgumentParser
        Parser for ``backup``, ``container`` and ``verify``
    """
    parser = argparse.ArgumentParser(
        prog="vbackup",
        description="Copy a directory tree and prove the copy with SHA-256 verification",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  vbackup backup -s /data -d /backup                    # Directory copy, rolled back on mismatch
  sudo vbackup container -s /data -p 'MyPass123'        # New VeraCrypt container in /mnt
  sudo vbackup container -s /data -k key1.key,key2.key  # Keyfile authentication
  vbackup verify -s /data -d /backup                    # Check an existing copy
        """,
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-v", "--verbose", action="store_true", help="Enable verbose output")
    common.add_argument(
        "--hash-algorithm",
        type=str,
        default=DEFAULT_ALGORITHM,
        choices=SUPPORTED_ALGORITHMS,
        help=f"Hash algorithm for verification (default: {DEFAULT_ALGORITHM})",
    )
    common.add_argument(
        "--workers",
        type=int,
        default=4,
        help="Files hashed concurrently (default: 4)",
    )
    common.add_argument(
        "--flat",
        action="store_true",
        help="Key fingerprints by file name only, ignoring directory layout",
    )
    common.add_argument(
        "-s", "--source", type=Path, required=True, help="Directory containing files to back up"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # backup
    backup = subparsers.add_parser(
        "backup", parents=[common], help="Copy a directory into another directory"
    )
    backup.add_argument(
        "-d", "--destination", type=Path, required=True, help="Directory where files will be copied"
    )
    backup.add_argument(
        "--include-hidden", action="store_true", help="Also verify dot-prefixed files"
    )
    backup.add_argument(
        "--margin",
        type=str,
        default="0.10",
        help="Free-space headroom as a ratio of the source size (default: 0.10)",
    )
    backup.add_argument(
        "--allow-existing",
        action="store_true",
        help="Copy into a destination that already holds files (they are purged on failure)",
    )
    _add_copier_argument(backup)

    # container
    container = subparsers.add_parser(
        "container", parents=[common], help="Copy a directory into a new VeraCrypt container"
    )
    container.add_argument(
        "-d",
        "--destination",
        type=Path,
        default=Path("/mnt"),
        help="Directory where the container will be stored (default: /mnt)",
    )
    container.add_argument(
        "-p",
        "--password",
        type=str,
        default=None,
        help="Container password (default: $VERACRYPT_PASSWORD)",
    )
    container.add_argument(
        "-k",
        "--keyfile",
        type=str,
        default=None,
        help="Comma-separated keyfile paths (default: $VERACRYPT_KEYFILES)",
    )
    container.add_argument(
        "-n",
        "--container-name",
        type=str,
        default=None,
        help="Container file name prefix (default: source directory name)",
    )
    container.add_argument(
        "--timestamp-format",
        type=str,
        default="%Y%m%d_%H%M%S",
        help="strftime suffix of the container name (default: %%Y%%m%%d_%%H%%M%%S)",
    )
    container.add_argument(
        "--filesystem",
        type=str,
        default="ext4",
        choices=CONTAINER_FILESYSTEMS,
        help="Filesystem inside the container (default: ext4)",
    )
    container.add_argument(
        "--overhead-mib",
        type=int,
        default=CONTAINER_OVERHEAD_BYTES // MIB,
        help="Container size allowance on top of the data, in MiB (default: 128)",
    )
    container.add_argument(
        "--mount-point",
        type=Path,
        default=None,
        help="Where to mount the container (default: a temporary directory)",
    )
    container.add_argument(
        "--exclude-hidden", action="store_true", help="Do not verify dot-prefixed files"
    )
    existing = container.add_mutually_exclusive_group()
    existing.add_argument(
        "-f", "--force", action="store_true", help="Overwrite an existing container"
    )
    existing.add_argument(
        "--skip", action="store_true", help="Exit successfully if the container already exists"
    )
    _add_copier_argument(container)

    # verify
    verify = subparsers.add_parser(
        "verify",
        parents=[common],
        help="Verify an existing copy; the destination is purged if it differs",
    )
    verify.add_argument(
        "-d", "--destination", type=Path, required=True, help="Directory to verify"
    )
    verify.add_argument(
        "--include-hidden", action="store_true", help="Also verify dot-prefixed files"
    )

    return parser


def _add_copier_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--copier",
        type=str,
        default="rsync",
        choices=["rsync", "builtin"],
        help="Copy implementation: rsync or the built-in streaming copier (default: rsync)",
    )


def make_copier(name: str) -> Copier:
    if name == "builtin":
        return StreamingCopier()
    return RsyncCopier()


def main(argv: list[str] | None = None) -> int:
    """
    CLI entry point.

    Returns
    -------
    int
        Exit code: 0 for success, 1 for failure, 130 for keyboard interrupt
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        config = TransferConfig.from_args(args, os.environ)
        orchestrator = TransferOrchestrator(
            source_root=args.source,
            destination_root=args.destination,
            config=config,
            copier=make_copier(getattr(args, "copier", "rsync")),
        )
        processor = CLIProcessor(orchestrator, verify_only=args.command == "verify")

        result = asyncio.run(processor.run())
        return result.exit_code

    except KeyboardInterrupt:
        logger.error("Operation interrupted by user")
        return 130
    except ValueError as e:
        logger.error(f"Invalid parameter: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
