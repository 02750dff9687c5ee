"""
Transfer orchestration: plan, provision, copy, verify, commit or roll back.

The orchestrator is UI-agnostic. :meth:`TransferOrchestrator.run` and
:meth:`TransferOrchestrator.verify` are async generators that yield
``TransferEvent`` objects while working and exactly one ``TransferResult`` at
the end. They never raise for an expected failure; the error is recorded on
the result and the job ends in a terminal phase.
"""

import asyncio
import logging
import os
import shutil
import tempfile
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from .capacity import container_size_bytes, format_size, plan
from .compare import compare, format_report
from .config import ExistingPolicy, TransferConfig
from .container import ContainerService, VeraCryptContainer
from .copier import Copier, RsyncCopier
from .errors import (
    BackupError,
    CapacityError,
    CopyError,
    DuplicateKeyError,
    PreconditionError,
    ProvisioningError,
    VerificationError,
)
from .filesystem import Filesystem, LocalFilesystem
from .fingerprint import Fingerprinter
from .models import DivergenceReport, Phase, TransferJob

logger = logging.getLogger(__name__)


# ============================================================================
# Events and results
# ============================================================================


class EventType(Enum):
    """
    Events emitted while a job runs.

    Attributes
    ----------
    PHASE_CHANGE : str
        The job entered a new phase
    FINGERPRINT_START : str
        Hashing of a tree started
    FINGERPRINT_COMPLETE : str
        Hashing of a tree finished
    CAPACITY_CHECKED : str
        Free space was compared against the requirement
    COPY_START : str
        Copy service invoked
    COPY_COMPLETE : str
        Copy service returned success
    ROLLBACK_START : str
        Destination purge started
    """

    PHASE_CHANGE = "phase_change"
    FINGERPRINT_START = "fingerprint_start"
    FINGERPRINT_COMPLETE = "fingerprint_complete"
    CAPACITY_CHECKED = "capacity_checked"
    COPY_START = "copy_start"
    COPY_COMPLETE = "copy_complete"
    ROLLBACK_START = "rollback_start"


@dataclass
class TransferEvent:
    """
    Progress notification.

    Attributes
    ----------
    type : EventType
        Type of event
    phase : Phase
        Job phase when the event was emitted
    message : str, default=""
        Human readable description
    bytes_processed : int, default=0
        Bytes handled by the step so far
    total_bytes : int, default=0
        Bytes the step has to handle
    """

    type: EventType
    phase: Phase
    message: str = ""
    bytes_processed: int = 0
    total_bytes: int = 0


@dataclass
class TransferResult:
    """
    Final outcome of a job.

    Attributes
    ----------
    job : TransferJob
        The job in its terminal phase
    error : BackupError | None, default=None
        Primary failure, None on success
    rollback_errors : list[str], default=[]
        Cleanup failures encountered during rollback
    duration : float, default=0.0
        Wall-clock seconds
    """

    job: TransferJob
    error: BackupError | None = None
    rollback_errors: list[str] = field(default_factory=list)
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.job.phase in (Phase.COMMITTED, Phase.SKIPPED)

    @property
    def report(self) -> DivergenceReport | None:
        return self.job.divergence

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1


def purge_directory(root: Path, errors: list[str]) -> None:
    """
    Delete every entry under ``root``, keeping ``root`` itself.

    Failures are logged and appended to ``errors``; deletion continues with
    the next entry.
    """
    root = Path(root)
    if not root.is_dir():
        return

    logger.info(f"Deleting files from {root}")
    try:
        with os.scandir(root) as entries:
            children = [Path(entry.path) for entry in entries]
    except OSError as e:
        message = f"Failed to list {root}: {e}"
        logger.error(message)
        errors.append(message)
        return

    for child in children:
        try:
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()
        except OSError as e:
            message = f"Failed to delete {child}: {e}"
            logger.error(message)
            errors.append(message)


# ============================================================================
# Orchestrator
# ============================================================================


class TransferOrchestrator:
    """
    Commit/rollback state machine for one backup job.

    Parameters
    ----------
    source_root : Path
        Directory whose contents are backed up
    destination_root : Path
        Destination directory, or the directory that receives the container
        file when ``config.use_container`` is set
    config : TransferConfig
        Workflow parameters
    copier : Copier | None, default=None
        Bulk copy service, rsync when None
    containers : ContainerService | None, default=None
        Container lifecycle service, VeraCrypt when None and needed
    filesystem : Filesystem | None, default=None
        Size and free-space queries, local filesystem when None
    clock : Callable[[], datetime], default=datetime.now
        Source of the timestamp in container file names
    """

    def __init__(
        self,
        source_root: Path,
        destination_root: Path,
        config: TransferConfig,
        copier: Copier | None = None,
        containers: ContainerService | None = None,
        filesystem: Filesystem | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.source_root = Path(source_root)
        self.destination_root = Path(destination_root)
        self.config = config
        self.copier = copier or RsyncCopier()
        if containers is None and config.use_container:
            containers = VeraCryptContainer(filesystem=config.filesystem)
        self.containers = containers
        self.filesystem = filesystem or LocalFilesystem()
        self.clock = clock
        self.fingerprinter = Fingerprinter(
            mode=config.fingerprint_mode,
            include_hidden=config.include_hidden,
            algorithm=config.hash_algorithm,
            workers=config.workers,
        )

        self._replace_existing = False
        self._mounted = False
        self._created_mount_point = False

    async def run(self) -> AsyncIterator[TransferEvent | TransferResult]:
        """
        Execute the full copy-and-verify workflow.

        Yields
        ------
        TransferEvent | TransferResult
            Events while working, final yield is the TransferResult
        """
        start_time = time.time()
        job = TransferJob(source_root=self.source_root, destination_root=self.destination_root)
        error: BackupError | None = None
        rollback_errors: list[str] = []

        try:
            async for event in self._plan(job):
                yield event

            if job.phase != Phase.SKIPPED:
                if self.config.use_container:
                    async for event in self._provision(job):
                        yield event
                async for event in self._copy(job):
                    yield event
                async for event in self._verify(job):
                    yield event
                async for event in self._commit(job):
                    yield event

        except (PreconditionError, CapacityError, ProvisioningError) as e:
            error = e
            logger.error(str(e))
            job.advance(Phase.FAILED)

        except (CopyError, VerificationError) as e:
            error = e
            self._log_failure(e)
            async for event in self._rollback(job, rollback_errors):
                yield event

        yield TransferResult(
            job=job,
            error=error,
            rollback_errors=rollback_errors,
            duration=time.time() - start_time,
        )

    async def verify(self) -> AsyncIterator[TransferEvent | TransferResult]:
        """
        Verify an existing destination against the source without copying.

        A clean comparison commits; a dirty one purges the destination.

        Yields
        ------
        TransferEvent | TransferResult
            Events while working, final yield is the TransferResult
        """
        start_time = time.time()
        job = TransferJob(source_root=self.source_root, destination_root=self.destination_root)
        error: BackupError | None = None
        rollback_errors: list[str] = []

        try:
            yield self._event(EventType.PHASE_CHANGE, job, "Planning verification")
            try:
                self._check_source()
                if not self.destination_root.is_dir():
                    raise PreconditionError(
                        f"Destination directory does not exist: {self.destination_root}"
                    )
                self._check_not_nested()

                yield self._event(EventType.FINGERPRINT_START, job, f"Hashing source {job.source_root}")
                job.source_fingerprint = await self.fingerprinter.fingerprint_async(job.source_root)
                yield self._fingerprint_complete(job, job.source_fingerprint)

                yield self._event(
                    EventType.FINGERPRINT_START, job, f"Hashing destination {job.destination_root}"
                )
                job.destination_fingerprint = await self.fingerprinter.fingerprint_async(
                    job.destination_root
                )
                yield self._fingerprint_complete(job, job.destination_fingerprint)
            except (OSError, DuplicateKeyError) as e:
                raise PreconditionError(str(e)) from e

            job.divergence = compare(job.source_fingerprint, job.destination_fingerprint)
            job.advance(Phase.VERIFIED)
            yield self._event(EventType.PHASE_CHANGE, job, "Comparing hashes")
            if not job.divergence.is_clean():
                raise VerificationError(job.divergence)

            logger.info("Verification PASSED! All files match perfectly.")
            job.advance(Phase.COMMITTED)
            yield self._event(EventType.PHASE_CHANGE, job, "Verification completed successfully")

        except PreconditionError as e:
            error = e
            logger.error(str(e))
            job.advance(Phase.FAILED)

        except VerificationError as e:
            error = e
            self._log_failure(e)
            async for event in self._rollback(job, rollback_errors):
                yield event

        yield TransferResult(
            job=job,
            error=error,
            rollback_errors=rollback_errors,
            duration=time.time() - start_time,
        )

    # ------------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------------

    async def _plan(self, job: TransferJob) -> AsyncIterator[TransferEvent]:
        """
        Validate inputs, check capacity and fingerprint the source.

        Nothing at the destination is created or modified here.

        Raises
        ------
        PreconditionError
            If any input is unusable
        CapacityError
            If the destination is too small
        """
        yield self._event(EventType.PHASE_CHANGE, job, "Planning transfer")
        config = self.config

        try:
            if config.use_container:
                if config.credentials is None:
                    raise PreconditionError("Container credentials are required")
                config.credentials.validate()
                logger.info(f"Using {config.credentials.describe()}")

            self._check_source()
            self._check_not_nested()
            self.copier.ensure_available()

            if config.use_container:
                self.containers.ensure_available()
                job.container_path = self._container_path()
                if job.container_path.exists():
                    if self._handle_existing_container(job):
                        return
            elif not config.allow_existing and self.filesystem.has_entries(job.destination_root):
                raise PreconditionError(
                    f"Destination directory is not empty: {job.destination_root}. "
                    "Use --allow-existing to copy into it anyway"
                )

            source_size = self.filesystem.directory_size(job.source_root)
            available = self.filesystem.available_space(job.destination_root)
            capacity = plan(
                source_size,
                available,
                overhead_bytes=config.overhead_bytes,
                margin_ratio=config.margin_ratio,
            )
            job.capacity = capacity

            logger.info(f"Source size: {source_size} bytes ({format_size(source_size)})")
            logger.info(
                f"Required space: {capacity.required_bytes} bytes "
                f"({format_size(capacity.required_bytes)}, "
                f"overhead {format_size(config.overhead_bytes)}, "
                f"margin {float(capacity.margin_ratio):.0%})"
            )
            logger.info(f"Available space: {available} bytes ({format_size(available)})")
            yield self._event(
                EventType.CAPACITY_CHECKED,
                job,
                "Destination has sufficient space" if capacity.sufficient else "Insufficient space",
                bytes_processed=capacity.required_bytes,
                total_bytes=capacity.available_bytes,
            )

            if not capacity.sufficient:
                raise CapacityError(
                    "Insufficient space at destination. "
                    f"Required: {format_size(capacity.required_bytes)}, "
                    f"Available: {format_size(capacity.available_bytes)}",
                    capacity,
                )

            yield self._event(EventType.FINGERPRINT_START, job, f"Hashing source {job.source_root}")
            job.source_fingerprint = await self.fingerprinter.fingerprint_async(job.source_root)
            yield self._fingerprint_complete(job, job.source_fingerprint)

        except (OSError, DuplicateKeyError) as e:
            raise PreconditionError(str(e)) from e

    async def _provision(self, job: TransferJob) -> AsyncIterator[TransferEvent]:
        """
        Create and mount the container.

        Raises
        ------
        ProvisioningError
            If creation or mounting fails; partial artifacts are removed first
        """
        config = self.config
        container_path = job.container_path
        size = container_size_bytes(
            job.capacity.source_size_bytes,
            config.overhead_bytes,
            config.allocation_unit,
        )
        yield self._event(
            EventType.PHASE_CHANGE,
            job,
            f"Creating container {container_path} ({format_size(size)})",
            total_bytes=size,
        )

        try:
            if self._replace_existing:
                logger.warning(f"Removing existing container: {container_path}")
                container_path.unlink()
            container_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ProvisioningError(f"Cannot prepare container location: {e}") from e

        created = await asyncio.to_thread(
            self.containers.create, container_path, size, config.credentials
        )
        if not created:
            self._discard_container(job)
            raise ProvisioningError(f"Failed to create VeraCrypt container: {container_path}")
        logger.info("VeraCrypt container created successfully")

        try:
            job.mount_point = self._prepare_mount_point()
        except OSError as e:
            self._discard_container(job)
            raise ProvisioningError(f"Cannot create mount point: {e}") from e

        mounted = await asyncio.to_thread(
            self.containers.mount, container_path, job.mount_point, config.credentials
        )
        if not mounted:
            self._remove_mount_point(job)
            self._discard_container(job)
            raise ProvisioningError(f"Failed to mount VeraCrypt container at {job.mount_point}")
        self._mounted = True
        logger.info("VeraCrypt container mounted successfully")

        job.advance(Phase.PROVISIONED)
        yield self._event(EventType.PHASE_CHANGE, job, f"Container mounted at {job.mount_point}")

    async def _copy(self, job: TransferJob) -> AsyncIterator[TransferEvent]:
        target = job.copy_target
        total = job.capacity.source_size_bytes if job.capacity else 0
        yield self._event(
            EventType.COPY_START,
            job,
            f"Copying files from {job.source_root} to {target}",
            total_bytes=total,
        )

        try:
            target.mkdir(parents=True, exist_ok=True)
            copied = await self.copier.copy(job.source_root, target)
        except Exception as e:
            raise CopyError(f"Failed to copy files: {e}") from e
        if not copied:
            raise CopyError(f"Failed to copy files from {job.source_root} to {target}")

        job.advance(Phase.COPIED)
        yield self._event(
            EventType.COPY_COMPLETE,
            job,
            "Copy phase complete",
            bytes_processed=total,
            total_bytes=total,
        )

    async def _verify(self, job: TransferJob) -> AsyncIterator[TransferEvent]:
        """
        Fingerprint the destination and compare it with the source.

        Raises
        ------
        VerificationError
            If the destination differs or cannot be fingerprinted
        """
        target = job.copy_target
        yield self._event(EventType.FINGERPRINT_START, job, f"Hashing destination {target}")
        try:
            job.destination_fingerprint = await self.fingerprinter.fingerprint_async(
                target, allow_empty=True
            )
        except (OSError, DuplicateKeyError) as e:
            raise VerificationError(None, f"Destination could not be fingerprinted: {e}") from e
        yield self._fingerprint_complete(job, job.destination_fingerprint)

        logger.info(f"Comparing {self.config.hash_algorithm.upper()} hashes")
        job.divergence = compare(job.source_fingerprint, job.destination_fingerprint)
        job.advance(Phase.VERIFIED)
        yield self._event(
            EventType.PHASE_CHANGE,
            job,
            "Verification clean" if job.divergence.is_clean() else "Verification dirty",
        )

        if not job.divergence.is_clean():
            raise VerificationError(job.divergence)
        logger.info("Hash verification PASSED! All files match perfectly.")

    async def _commit(self, job: TransferJob) -> AsyncIterator[TransferEvent]:
        if self.config.use_container and self._mounted:
            unmounted = await asyncio.to_thread(self.containers.unmount, job.mount_point)
            if unmounted:
                self._mounted = False
                self._remove_mount_point(job)
            else:
                logger.warning(f"Failed to dismount VeraCrypt container from {job.mount_point}")

        job.advance(Phase.COMMITTED)
        location = job.container_path or job.destination_root
        yield self._event(EventType.PHASE_CHANGE, job, f"Backup committed: {location}")

    async def _rollback(
        self, job: TransferJob, errors: list[str]
    ) -> AsyncIterator[TransferEvent]:
        """
        Purge the destination after a copy or verification failure.

        Best effort: every cleanup failure is logged and collected, nothing is
        retried and nothing raised.
        """
        yield self._event(EventType.ROLLBACK_START, job, "Rolling back destination")
        logger.warning("Cleaning up untrusted destination...")

        if self.config.use_container and job.container_path is not None:
            try:
                if self._mounted:
                    purge_directory(job.mount_point, errors)
                    await self._unmount_for_rollback(job, errors)
            finally:
                self._remove_mount_point(job)
                self._discard_container(job, errors)
        else:
            purge_directory(job.destination_root, errors)

        job.advance(Phase.ROLLED_BACK)
        yield self._event(EventType.PHASE_CHANGE, job, "Destination rolled back")

    # ------------------------------------------------------------------------
    # Internal methods
    # ------------------------------------------------------------------------

    def _event(
        self,
        event_type: EventType,
        job: TransferJob,
        message: str = "",
        bytes_processed: int = 0,
        total_bytes: int = 0,
    ) -> TransferEvent:
        return TransferEvent(
            type=event_type,
            phase=job.phase,
            message=message,
            bytes_processed=bytes_processed,
            total_bytes=total_bytes,
        )

    def _fingerprint_complete(self, job: TransferJob, fingerprint) -> TransferEvent:
        return self._event(
            EventType.FINGERPRINT_COMPLETE,
            job,
            f"Hashed {len(fingerprint)} file(s) under {fingerprint.root}",
            bytes_processed=fingerprint.total_bytes,
            total_bytes=fingerprint.total_bytes,
        )

    def _log_failure(self, error: BackupError) -> None:
        logger.error(str(error))
        report = getattr(error, "report", None)
        if report is not None:
            for line in format_report(report):
                logger.error(line)

    def _check_source(self) -> None:
        if not self.source_root.exists():
            raise PreconditionError(f"Source directory does not exist: {self.source_root}")
        if not self.source_root.is_dir():
            raise PreconditionError(f"Source is not a directory: {self.source_root}")

    def _check_not_nested(self) -> None:
        source = self.source_root.resolve()
        destination = self.destination_root.resolve()
        if source == destination:
            raise PreconditionError("Source and destination are the same directory")
        if destination.is_relative_to(source):
            raise PreconditionError(
                f"Destination {destination} must not be inside source {source}"
            )
        # Purging a destination directory that contains the source would delete it
        if not self.config.use_container and source.is_relative_to(destination):
            raise PreconditionError(
                f"Source {source} and destination {destination} must not be nested"
            )

    def _container_path(self) -> Path:
        name = self.config.container_name or self.source_root.resolve().name.replace(" ", "-")
        stamp = self.clock().strftime(self.config.timestamp_format)
        return self.destination_root / f"{name}_{stamp}.vc"

    def _handle_existing_container(self, job: TransferJob) -> bool:
        """Apply the existing-container policy; True means the job was skipped."""
        path = job.container_path
        logger.warning(f"Container '{path}' already exists!")
        policy = self.config.existing_policy
        if policy == ExistingPolicy.SKIP:
            logger.info("Skip mode enabled - exiting successfully without overwriting")
            job.advance(Phase.SKIPPED)
            return True
        if policy == ExistingPolicy.OVERWRITE:
            logger.warning("Force mode enabled - existing container will be replaced")
            self._replace_existing = True
            return False
        raise PreconditionError(
            f"Container already exists: {path}. Use --force to overwrite or --skip to exit cleanly"
        )

    def _prepare_mount_point(self) -> Path:
        if self.config.mount_point is not None:
            mount_point = Path(self.config.mount_point)
            self._created_mount_point = not mount_point.exists()
            mount_point.mkdir(parents=True, exist_ok=True)
            return mount_point
        self._created_mount_point = True
        return Path(tempfile.mkdtemp(prefix="vbackup_mount_"))

    def _remove_mount_point(self, job: TransferJob) -> None:
        if job.mount_point is None or not self._created_mount_point:
            return
        try:
            job.mount_point.rmdir()
            self._created_mount_point = False
        except OSError as e:
            logger.warning(f"Could not remove mount point {job.mount_point}: {e}")

    async def _unmount_for_rollback(self, job: TransferJob, errors: list[str]) -> None:
        try:
            unmounted = await asyncio.to_thread(self.containers.unmount, job.mount_point)
        except Exception as e:
            message = f"Failed to dismount VeraCrypt container from {job.mount_point}: {e}"
            logger.error(message)
            errors.append(message)
            return

        if unmounted:
            self._mounted = False
        else:
            message = f"Failed to dismount VeraCrypt container from {job.mount_point}"
            logger.error(message)
            errors.append(message)

    def _discard_container(self, job: TransferJob, errors: list[str] | None = None) -> None:
        path = job.container_path
        if path is None or not path.exists():
            return
        logger.info(f"Deleting VeraCrypt container: {path}")
        try:
            path.unlink()
        except OSError as e:
            message = f"Failed to delete container {path}: {e}"
            logger.error(message)
            if errors is not None:
                errors.append(message)
