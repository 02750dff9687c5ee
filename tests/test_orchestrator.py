#!/usr/bin/env python3
"""
Test suite for the transfer orchestrator.

Tests cover:
- Directory copy, verify and commit
- Rollback after corruption or copy failure
- Precondition and capacity failures that leave the destination untouched
- Container provisioning, skip/force policies and container rollback
- The verify-only workflow
"""

import asyncio
import errno
import os
import shutil
import sys
import tempfile
from datetime import datetime
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

# Add src directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from vbackup import (
    CapacityError,
    CopyError,
    Credentials,
    EmptyTreeError,
    EventType,
    ExistingPolicy,
    LocalFilesystem,
    Phase,
    PreconditionError,
    ProvisioningError,
    StreamingCopier,
    TransferConfig,
    TransferEvent,
    TransferJob,
    TransferOrchestrator,
    TransferResult,
    VerificationError,
)
from vbackup.capacity import container_size_bytes

FIXED_TIME = datetime(2024, 1, 2, 3, 4, 5)


# ============================================================================
# Test doubles
# ============================================================================


class CorruptingCopier(StreamingCopier):
    """Copies correctly, then overwrites one destination file."""

    def __init__(self, relative_path: str):
        super().__init__()
        self.relative_path = relative_path

    async def copy(self, source_root: Path, destination_root: Path) -> bool:
        copied = await super().copy(source_root, destination_root)
        (Path(destination_root) / self.relative_path).write_bytes(b"corrupted")
        return copied


class PartialCopier:
    """Writes one file and then reports failure."""

    def __init__(self, raise_error: bool = False):
        self.raise_error = raise_error

    def ensure_available(self) -> None:
        return None

    async def copy(self, source_root: Path, destination_root: Path) -> bool:
        (Path(destination_root) / "partial.txt").write_bytes(b"half")
        if self.raise_error:
            raise OSError("device vanished")
        return False


class TreeCopier:
    """Copies with shutil.copytree in a worker thread."""

    def __init__(self):
        self.calls = 0

    def ensure_available(self) -> None:
        return None

    async def copy(self, source_root: Path, destination_root: Path) -> bool:
        self.calls += 1
        await asyncio.to_thread(
            shutil.copytree, source_root, destination_root, dirs_exist_ok=True
        )
        return True


class FakeContainers:
    """
    In-memory container service.

    The container file is a placeholder; files copied into the mount point
    vanish from it on unmount, as they would with a real volume.
    """

    def __init__(self, create_ok=True, mount_ok=True, unmount_ok=True):
        self.create_ok = create_ok
        self.mount_ok = mount_ok
        self.unmount_ok = unmount_ok
        self.calls = []
        self.created_size = None

    def ensure_available(self) -> None:
        return None

    def create(self, path: Path, size_bytes: int, credentials: Credentials) -> bool:
        self.calls.append("create")
        self.created_size = size_bytes
        path.write_bytes(b"VERA" * 4)
        return self.create_ok

    def mount(self, path: Path, mount_point: Path, credentials: Credentials) -> bool:
        self.calls.append("mount")
        return self.mount_ok

    def unmount(self, mount_point: Path) -> bool:
        self.calls.append("unmount")
        if not self.unmount_ok:
            return False
        for child in list(mount_point.iterdir()):
            if child.is_dir():
                shutil.rmtree(child)
            else:
                child.unlink()
        return True


class RoomyFilesystem(LocalFilesystem):
    """Local filesystem that always reports plenty of free space."""

    def available_space(self, path: Path) -> int:
        return 1 << 40


async def run_job(orchestrator: TransferOrchestrator, verify: bool = False):
    """Collect events and the final result of a job."""
    events = []
    result = None
    stream = orchestrator.verify() if verify else orchestrator.run()
    async for item in stream:
        if isinstance(item, TransferResult):
            result = item
        else:
            events.append(item)
    return events, result


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def transfer_env():
    """Create a source tree and an unused destination path."""
    test_dir = tempfile.mkdtemp()
    test_path = Path(test_dir)

    source = test_path / "source"
    source.mkdir()
    (source / "a.txt").write_text("content a")
    (source / "b.txt").write_text("content b")
    subdir = source / "sub"
    subdir.mkdir()
    (subdir / "c.txt").write_text("content c")

    destination = test_path / "dest"

    yield test_path, source, destination
    shutil.rmtree(test_dir)


@pytest.fixture
def container_env(transfer_env):
    """Container configuration with a mount point inside the test directory."""
    test_path, source, destination = transfer_env
    destination.mkdir()
    config = TransferConfig.for_container(
        Credentials(password="secret"), mount_point=test_path / "mnt"
    )
    return test_path, source, destination, config


def make_container_orchestrator(source, destination, config, containers, copier=None):
    return TransferOrchestrator(
        source,
        destination,
        config,
        copier=copier or StreamingCopier(),
        containers=containers,
        filesystem=RoomyFilesystem(),
        clock=lambda: FIXED_TIME,
    )


# ============================================================================
# Directory Backup Tests
# ============================================================================


@pytest.mark.asyncio
async def test_directory_backup_commits(transfer_env) -> None:
    """Test a clean copy ends committed with every file in place."""
    _, source, destination = transfer_env
    orchestrator = TransferOrchestrator(
        source, destination, TransferConfig.for_directory(), copier=StreamingCopier()
    )

    events, result = await run_job(orchestrator)

    assert result.success
    assert result.exit_code == 0
    assert result.error is None
    assert result.job.history == [Phase.PLANNED, Phase.COPIED, Phase.VERIFIED, Phase.COMMITTED]
    assert result.report.is_clean()
    assert (destination / "sub" / "c.txt").read_text() == "content c"
    assert all(isinstance(event, TransferEvent) for event in events)


@pytest.mark.asyncio
async def test_directory_backup_events_in_order(transfer_env) -> None:
    """Test that events follow the workflow order."""
    _, source, destination = transfer_env
    orchestrator = TransferOrchestrator(
        source, destination, TransferConfig.for_directory(), copier=StreamingCopier()
    )

    events, _ = await run_job(orchestrator)
    types = [event.type for event in events]

    assert types.index(EventType.CAPACITY_CHECKED) < types.index(EventType.COPY_START)
    assert types.index(EventType.COPY_START) < types.index(EventType.COPY_COMPLETE)
    assert types.count(EventType.FINGERPRINT_COMPLETE) == 2
    assert EventType.ROLLBACK_START not in types


@pytest.mark.asyncio
async def test_corrupted_copy_rolls_back(transfer_env) -> None:
    """Test that a mismatched file purges the destination."""
    _, source, destination = transfer_env
    orchestrator = TransferOrchestrator(
        source, destination, TransferConfig.for_directory(), copier=CorruptingCopier("b.txt")
    )

    events, result = await run_job(orchestrator)

    assert not result.success
    assert result.exit_code == 1
    assert result.job.phase == Phase.ROLLED_BACK
    assert isinstance(result.error, VerificationError)
    assert result.report.mismatched == {"b.txt"}
    assert not result.report.missing
    assert not result.report.extra
    assert destination.is_dir()
    assert list(destination.iterdir()) == []
    assert any(event.type == EventType.ROLLBACK_START for event in events)
    # Source is never touched
    assert (source / "b.txt").read_text() == "content b"


@pytest.mark.asyncio
async def test_copy_failure_rolls_back(transfer_env) -> None:
    """Test that a failed copy purges partial output."""
    _, source, destination = transfer_env
    orchestrator = TransferOrchestrator(
        source, destination, TransferConfig.for_directory(), copier=PartialCopier()
    )

    _, result = await run_job(orchestrator)

    assert result.job.phase == Phase.ROLLED_BACK
    assert isinstance(result.error, CopyError)
    assert list(destination.iterdir()) == []


@pytest.mark.asyncio
async def test_copy_exception_rolls_back(transfer_env) -> None:
    """Test that an exception from the copier is treated as copy failure."""
    _, source, destination = transfer_env
    orchestrator = TransferOrchestrator(
        source,
        destination,
        TransferConfig.for_directory(),
        copier=PartialCopier(raise_error=True),
    )

    _, result = await run_job(orchestrator)

    assert result.job.phase == Phase.ROLLED_BACK
    assert isinstance(result.error, CopyError)
    assert "device vanished" in str(result.error)
    assert list(destination.iterdir()) == []


@pytest.mark.asyncio
async def test_insufficient_space_fails_before_copy(transfer_env) -> None:
    """Test that a capacity shortfall touches nothing."""
    _, source, destination = transfer_env
    copier = TreeCopier()
    orchestrator = TransferOrchestrator(
        source, destination, TransferConfig.for_directory(), copier=copier
    )

    with patch("shutil.disk_usage") as mock_usage:
        mock_usage.return_value = Mock(free=0)
        _, result = await run_job(orchestrator)

    assert result.job.phase == Phase.FAILED
    assert isinstance(result.error, CapacityError)
    assert "space" in str(result.error).lower()
    assert not result.error.plan.sufficient
    assert copier.calls == 0
    assert not destination.exists()


@pytest.mark.asyncio
async def test_non_empty_destination_refused(transfer_env) -> None:
    """Test that existing destination files are protected by default."""
    _, source, destination = transfer_env
    destination.mkdir()
    (destination / "keep.txt").write_text("precious")
    copier = TreeCopier()
    orchestrator = TransferOrchestrator(
        source, destination, TransferConfig.for_directory(), copier=copier
    )

    _, result = await run_job(orchestrator)

    assert result.job.phase == Phase.FAILED
    assert isinstance(result.error, PreconditionError)
    assert copier.calls == 0
    assert (destination / "keep.txt").read_text() == "precious"


@pytest.mark.asyncio
async def test_allow_existing_stale_file_is_extra(transfer_env) -> None:
    """Test that a leftover destination file fails verification."""
    _, source, destination = transfer_env
    destination.mkdir()
    (destination / "stale.txt").write_text("old")
    orchestrator = TransferOrchestrator(
        source,
        destination,
        TransferConfig.for_directory(allow_existing=True),
        copier=TreeCopier(),
    )

    _, result = await run_job(orchestrator)

    assert result.job.phase == Phase.ROLLED_BACK
    assert result.report.extra == {"stale.txt"}
    assert list(destination.iterdir()) == []


@pytest.mark.asyncio
async def test_missing_source_fails(transfer_env) -> None:
    test_path, _, destination = transfer_env
    orchestrator = TransferOrchestrator(
        test_path / "nope", destination, TransferConfig.for_directory(), copier=TreeCopier()
    )

    _, result = await run_job(orchestrator)

    assert result.job.phase == Phase.FAILED
    assert isinstance(result.error, PreconditionError)
    assert result.exit_code == 1


@pytest.mark.asyncio
async def test_empty_source_fails(transfer_env) -> None:
    """Test that a source without files is refused."""
    test_path, _, destination = transfer_env
    empty = test_path / "empty"
    (empty / "nested").mkdir(parents=True)
    copier = TreeCopier()
    orchestrator = TransferOrchestrator(
        empty, destination, TransferConfig.for_directory(), copier=copier
    )

    _, result = await run_job(orchestrator)

    assert result.job.phase == Phase.FAILED
    assert isinstance(result.error, EmptyTreeError)
    assert copier.calls == 0


@pytest.mark.asyncio
async def test_destination_inside_source_refused(transfer_env) -> None:
    _, source, _ = transfer_env
    orchestrator = TransferOrchestrator(
        source, source / "backup", TransferConfig.for_directory(), copier=TreeCopier()
    )

    _, result = await run_job(orchestrator)

    assert result.job.phase == Phase.FAILED
    assert "inside" in str(result.error)


@pytest.mark.asyncio
async def test_source_inside_destination_refused(transfer_env) -> None:
    """Test that a purge could never reach the source."""
    test_path, source, _ = transfer_env
    orchestrator = TransferOrchestrator(
        source,
        test_path,
        TransferConfig.for_directory(allow_existing=True),
        copier=TreeCopier(),
    )

    _, result = await run_job(orchestrator)

    assert result.job.phase == Phase.FAILED
    assert (source / "a.txt").exists()


@pytest.mark.asyncio
async def test_hidden_files_ignored_by_default(transfer_env) -> None:
    """Test that dot files are outside the directory fingerprint."""
    _, source, destination = transfer_env
    (source / ".DS_Store").write_bytes(b"finder junk")
    orchestrator = TransferOrchestrator(
        source, destination, TransferConfig.for_directory(), copier=CorruptingCopier(".DS_Store")
    )

    _, result = await run_job(orchestrator)

    assert result.job.phase == Phase.COMMITTED


@pytest.mark.asyncio
async def test_many_files_commit(transfer_env) -> None:
    """Test a tree of ten thousand small files."""
    test_path, _, destination = transfer_env
    source = test_path / "many"
    for d in range(100):
        directory = source / f"dir_{d:03d}"
        directory.mkdir(parents=True)
        for f in range(100):
            (directory / f"file_{f:03d}.txt").write_text(f"{d}-{f}")
    orchestrator = TransferOrchestrator(
        source,
        destination,
        TransferConfig.for_directory(workers=16),
        copier=TreeCopier(),
    )

    _, result = await run_job(orchestrator)

    assert result.job.phase == Phase.COMMITTED
    assert len(result.job.source_fingerprint) == 10_000
    assert len(result.job.destination_fingerprint) == 10_000


# ============================================================================
# Container Backup Tests
# ============================================================================


@pytest.mark.asyncio
async def test_container_backup_commits(container_env) -> None:
    """Test create, mount, copy, verify and unmount."""
    test_path, source, destination, config = container_env
    containers = FakeContainers()
    orchestrator = make_container_orchestrator(source, destination, config, containers)

    _, result = await run_job(orchestrator)

    expected = destination / "source_20240102_030405.vc"
    assert result.job.phase == Phase.COMMITTED
    assert result.job.history == [
        Phase.PLANNED,
        Phase.PROVISIONED,
        Phase.COPIED,
        Phase.VERIFIED,
        Phase.COMMITTED,
    ]
    assert result.job.container_path == expected
    assert expected.exists()
    assert containers.calls == ["create", "mount", "unmount"]
    assert containers.created_size == container_size_bytes(result.job.capacity.source_size_bytes)
    assert not (test_path / "mnt").exists()


@pytest.mark.asyncio
async def test_container_name_override(container_env) -> None:
    _, source, destination, config = container_env
    config.container_name = "Photos"
    orchestrator = make_container_orchestrator(source, destination, config, FakeContainers())

    _, result = await run_job(orchestrator)

    assert result.job.container_path == destination / "Photos_20240102_030405.vc"


@pytest.mark.asyncio
async def test_container_corruption_deletes_container(container_env) -> None:
    """Test that a failed verification removes the whole container."""
    test_path, source, destination, config = container_env
    containers = FakeContainers()
    orchestrator = make_container_orchestrator(
        source, destination, config, containers, copier=CorruptingCopier("sub/c.txt")
    )

    _, result = await run_job(orchestrator)

    assert result.job.phase == Phase.ROLLED_BACK
    assert result.report.mismatched == {"sub/c.txt"}
    assert not result.job.container_path.exists()
    assert "unmount" in containers.calls
    assert not (test_path / "mnt").exists()
    assert result.rollback_errors == []


@pytest.mark.asyncio
async def test_container_rollback_collects_errors(container_env) -> None:
    """Test that a failed dismount is reported but the container still goes."""
    _, source, destination, config = container_env
    containers = FakeContainers(unmount_ok=False)
    orchestrator = make_container_orchestrator(
        source, destination, config, containers, copier=PartialCopier()
    )

    _, result = await run_job(orchestrator)

    assert result.job.phase == Phase.ROLLED_BACK
    assert any("dismount" in message for message in result.rollback_errors)
    assert not result.job.container_path.exists()


@pytest.mark.asyncio
async def test_container_rollback_survives_unlistable_mount(container_env) -> None:
    """Test that a mount point that cannot be listed still ends with the container deleted."""
    test_path, source, destination, config = container_env
    containers = FakeContainers()
    orchestrator = make_container_orchestrator(
        source, destination, config, containers, copier=CorruptingCopier("a.txt")
    )
    mount_point = os.path.realpath(test_path / "mnt")
    real_scandir = os.scandir
    rolling_back = False

    def failing_scandir(path="."):
        if rolling_back and os.path.realpath(path) == mount_point:
            raise OSError(errno.EIO, "Input/output error")
        return real_scandir(path)

    result = None
    with patch("vbackup.orchestrator.os.scandir", side_effect=failing_scandir):
        async for item in orchestrator.run():
            if isinstance(item, TransferResult):
                result = item
            elif item.type == EventType.ROLLBACK_START:
                rolling_back = True

    assert result is not None
    assert result.job.phase == Phase.ROLLED_BACK
    assert isinstance(result.error, VerificationError)
    assert "unmount" in containers.calls
    assert not result.job.container_path.exists()
    assert any("Failed to list" in message for message in result.rollback_errors)


class BusyContainers(FakeContainers):
    """Container service whose dismount raises."""

    def unmount(self, mount_point: Path) -> bool:
        self.calls.append("unmount")
        raise RuntimeError("device busy")


@pytest.mark.asyncio
async def test_container_rollback_survives_unmount_exception(container_env) -> None:
    _, source, destination, config = container_env
    containers = BusyContainers()
    orchestrator = make_container_orchestrator(
        source, destination, config, containers, copier=PartialCopier()
    )

    _, result = await run_job(orchestrator)

    assert result.job.phase == Phase.ROLLED_BACK
    assert isinstance(result.error, CopyError)
    assert not result.job.container_path.exists()
    assert any("device busy" in message for message in result.rollback_errors)


@pytest.mark.asyncio
async def test_directory_rollback_survives_unlistable_destination(transfer_env) -> None:
    """Test that a listing failure during directory rollback is reported, not raised."""
    _, source, destination = transfer_env
    orchestrator = TransferOrchestrator(
        source, destination, TransferConfig.for_directory(), copier=PartialCopier()
    )
    rolling_back = False
    real_scandir = os.scandir

    def failing_scandir(path="."):
        if rolling_back:
            raise OSError(errno.EIO, "Input/output error")
        return real_scandir(path)

    result = None
    with patch("vbackup.orchestrator.os.scandir", side_effect=failing_scandir):
        async for item in orchestrator.run():
            if isinstance(item, TransferResult):
                result = item
            elif item.type == EventType.ROLLBACK_START:
                rolling_back = True

    assert result is not None
    assert result.job.phase == Phase.ROLLED_BACK
    assert isinstance(result.error, CopyError)
    assert any("Failed to list" in message for message in result.rollback_errors)
    assert (destination / "partial.txt").exists()


@pytest.mark.asyncio
async def test_existing_container_fails_by_default(container_env) -> None:
    _, source, destination, config = container_env
    existing = destination / "source_20240102_030405.vc"
    existing.write_bytes(b"old container")
    containers = FakeContainers()
    orchestrator = make_container_orchestrator(source, destination, config, containers)

    _, result = await run_job(orchestrator)

    assert result.job.phase == Phase.FAILED
    assert "already exists" in str(result.error)
    assert existing.read_bytes() == b"old container"
    assert containers.calls == []


@pytest.mark.asyncio
async def test_existing_container_skip(container_env) -> None:
    """Test that skip mode exits successfully without touching anything."""
    _, source, destination, config = container_env
    config.existing_policy = ExistingPolicy.SKIP
    existing = destination / "source_20240102_030405.vc"
    existing.write_bytes(b"old container")
    containers = FakeContainers()
    orchestrator = make_container_orchestrator(source, destination, config, containers)

    _, result = await run_job(orchestrator)

    assert result.job.phase == Phase.SKIPPED
    assert result.success
    assert result.exit_code == 0
    assert existing.read_bytes() == b"old container"
    assert containers.calls == []


@pytest.mark.asyncio
async def test_existing_container_force(container_env) -> None:
    """Test that force mode replaces the old container."""
    _, source, destination, config = container_env
    config.existing_policy = ExistingPolicy.OVERWRITE
    existing = destination / "source_20240102_030405.vc"
    existing.write_bytes(b"old container")
    orchestrator = make_container_orchestrator(source, destination, config, FakeContainers())

    _, result = await run_job(orchestrator)

    assert result.job.phase == Phase.COMMITTED
    assert existing.read_bytes() == b"VERA" * 4


@pytest.mark.asyncio
async def test_container_create_failure(container_env) -> None:
    """Test that a failed create leaves no container file behind."""
    _, source, destination, config = container_env
    containers = FakeContainers(create_ok=False)
    orchestrator = make_container_orchestrator(source, destination, config, containers)

    _, result = await run_job(orchestrator)

    assert result.job.phase == Phase.FAILED
    assert isinstance(result.error, ProvisioningError)
    assert list(destination.iterdir()) == []
    assert containers.calls == ["create"]


@pytest.mark.asyncio
async def test_container_mount_failure(container_env) -> None:
    test_path, source, destination, config = container_env
    containers = FakeContainers(mount_ok=False)
    orchestrator = make_container_orchestrator(source, destination, config, containers)

    _, result = await run_job(orchestrator)

    assert result.job.phase == Phase.FAILED
    assert isinstance(result.error, ProvisioningError)
    assert list(destination.iterdir()) == []
    assert not (test_path / "mnt").exists()


@pytest.mark.asyncio
async def test_container_requires_credentials(container_env) -> None:
    _, source, destination, _ = container_env
    config = TransferConfig.for_container(Credentials())
    containers = FakeContainers()
    orchestrator = make_container_orchestrator(source, destination, config, containers)

    _, result = await run_job(orchestrator)

    assert result.job.phase == Phase.FAILED
    assert isinstance(result.error, PreconditionError)
    assert containers.calls == []


@pytest.mark.asyncio
async def test_container_capacity_includes_overhead(container_env) -> None:
    """Test that the fixed overhead is demanded even for a tiny source."""
    _, source, destination, config = container_env
    containers = FakeContainers()
    orchestrator = TransferOrchestrator(
        source,
        destination,
        config,
        copier=StreamingCopier(),
        containers=containers,
        filesystem=LocalFilesystem(),
        clock=lambda: FIXED_TIME,
    )

    with patch("shutil.disk_usage") as mock_usage:
        mock_usage.return_value = Mock(free=100 * 1024 * 1024)
        _, result = await run_job(orchestrator)

    assert result.job.phase == Phase.FAILED
    assert isinstance(result.error, CapacityError)
    assert containers.calls == []


# ============================================================================
# Verify-only Tests
# ============================================================================


@pytest.mark.asyncio
async def test_verify_clean_copy(transfer_env) -> None:
    _, source, destination = transfer_env
    shutil.copytree(source, destination)
    orchestrator = TransferOrchestrator(source, destination, TransferConfig.for_directory())

    _, result = await run_job(orchestrator, verify=True)

    assert result.job.history == [Phase.PLANNED, Phase.VERIFIED, Phase.COMMITTED]
    assert result.exit_code == 0


@pytest.mark.asyncio
async def test_verify_dirty_copy_purges_destination(transfer_env) -> None:
    """Test that a copy with a missing file is purged."""
    _, source, destination = transfer_env
    shutil.copytree(source, destination)
    (destination / "a.txt").unlink()

    orchestrator = TransferOrchestrator(source, destination, TransferConfig.for_directory())
    _, result = await run_job(orchestrator, verify=True)

    assert result.job.phase == Phase.ROLLED_BACK
    assert result.report.missing == {"a.txt"}
    assert list(destination.iterdir()) == []


@pytest.mark.asyncio
async def test_verify_missing_destination(transfer_env) -> None:
    _, source, destination = transfer_env
    orchestrator = TransferOrchestrator(source, destination, TransferConfig.for_directory())

    _, result = await run_job(orchestrator, verify=True)

    assert result.job.phase == Phase.FAILED
    assert "does not exist" in str(result.error)


@pytest.mark.asyncio
async def test_verify_empty_destination_untouched(transfer_env) -> None:
    """Test that an empty destination is a precondition failure, not a purge."""
    _, source, destination = transfer_env
    (destination / "subdir").mkdir(parents=True)
    orchestrator = TransferOrchestrator(source, destination, TransferConfig.for_directory())

    _, result = await run_job(orchestrator, verify=True)

    assert result.job.phase == Phase.FAILED
    assert isinstance(result.error, EmptyTreeError)
    assert (destination / "subdir").is_dir()


# ============================================================================
# Job State Tests
# ============================================================================


def test_illegal_transition_rejected() -> None:
    job = TransferJob(source_root=Path("/src"), destination_root=Path("/dst"))

    with pytest.raises(RuntimeError):
        job.advance(Phase.COMMITTED)

    job.advance(Phase.COPIED)
    job.advance(Phase.VERIFIED)
    job.advance(Phase.COMMITTED)

    with pytest.raises(RuntimeError):
        job.advance(Phase.ROLLED_BACK)
    assert job.phase.terminal
