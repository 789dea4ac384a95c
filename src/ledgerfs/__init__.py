"""ledgerfs: virtual file storage with reference-counted metadata tracking.

One path-based API over local disk and Google Drive, with an optional
relational ledger of every tracked file's hash, references and status.
"""

__version__ = "0.1.0"

from ledgerfs.fs import (
    CleanupResult,
    ErrorCode,
    FileItem,
    FolderItem,
    LedgerError,
    OperationResult,
    StorageBackend,
    StorageConfig,
    TrackingConfig,
    create_backend,
    create_initialized_backend,
    load_config,
)
from ledgerfs.hashing import ContentHasher, compute_file_hash
from ledgerfs.manager import (
    ExtractionProvider,
    FileManager,
    RefSpec,
    TrackedFileManager,
    TrackedUpload,
)
from ledgerfs.models import FileRecord, FileRecordBase, FileStatus
from ledgerfs.tracking import (
    FindOrphanedOptions,
    MetadataService,
    RemoveRefsCriteria,
    migrate_to_v2,
    open_engine,
)

__all__ = [
    "CleanupResult",
    "ContentHasher",
    "ErrorCode",
    "ExtractionProvider",
    "FileItem",
    "FileManager",
    "FileRecord",
    "FileRecordBase",
    "FileStatus",
    "FindOrphanedOptions",
    "FolderItem",
    "LedgerError",
    "MetadataService",
    "OperationResult",
    "RefSpec",
    "RemoveRefsCriteria",
    "StorageBackend",
    "StorageConfig",
    "TrackedFileManager",
    "TrackedUpload",
    "TrackingConfig",
    "__version__",
    "create_backend",
    "create_initialized_backend",
    "compute_file_hash",
    "load_config",
    "migrate_to_v2",
    "open_engine",
]
