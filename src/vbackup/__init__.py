"""
vbackup: Verified directory backups with commit/rollback semantics.

Copies a directory tree into another directory or into a freshly created
VeraCrypt container, proves the copy by comparing SHA-256 fingerprints of
source and destination, and purges the destination whenever the proof fails.
"""

from .capacity import container_size_bytes, format_size, plan
from .cli import CLIProcessor, main
from .compare import compare, format_report
from .config import Credentials, ExistingPolicy, TransferConfig
from .copier import Copier, RsyncCopier, StreamingCopier
from .container import ContainerService, VeraCryptContainer
from .errors import (
    BackupError,
    CapacityError,
    CopyError,
    DuplicateKeyError,
    EmptyTreeError,
    PreconditionError,
    ProvisioningError,
    VerificationError,
)
from .filesystem import Filesystem, LocalFilesystem
from .fingerprint import Fingerprinter, fingerprint
from .hashing import HashCalculator
from .models import (
    CapacityPlan,
    DivergenceReport,
    FileEntry,
    Fingerprint,
    FingerprintMode,
    Phase,
    TransferJob,
)
from .orchestrator import EventType, TransferEvent, TransferOrchestrator, TransferResult

__version__ = "1.0.0"
__description__ = "Verified directory backups with commit/rollback semantics"

__all__ = [
    "BackupError",
    "CLIProcessor",
    "CapacityError",
    "CapacityPlan",
    "ContainerService",
    "Copier",
    "CopyError",
    "Credentials",
    "DivergenceReport",
    "DuplicateKeyError",
    "EmptyTreeError",
    "EventType",
    "ExistingPolicy",
    "FileEntry",
    "Filesystem",
    "Fingerprint",
    "FingerprintMode",
    "Fingerprinter",
    "HashCalculator",
    "LocalFilesystem",
    "Phase",
    "PreconditionError",
    "ProvisioningError",
    "RsyncCopier",
    "StreamingCopier",
    "TransferConfig",
    "TransferEvent",
    "TransferJob",
    "TransferOrchestrator",
    "TransferResult",
    "VeraCryptContainer",
    "VerificationError",
    "compare",
    "container_size_bytes",
    "fingerprint",
    "format_report",
    "format_size",
    "main",
    "plan",
]
