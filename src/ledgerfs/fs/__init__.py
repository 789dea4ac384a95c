"""Filesystem layer — storage backends, path helpers, configuration."""

from ledgerfs.fs.config import (
    DriveConfig,
    LocalConfig,
    StorageConfig,
    TrackingConfig,
    load_config,
    parse_config,
)
from ledgerfs.fs.drive import DriveBackend
from ledgerfs.fs.drive_auth import RefreshingTokenProvider, StaticTokenProvider, TokenProvider
from ledgerfs.fs.exceptions import (
    AuthenticationError,
    ConfigurationError,
    DirectoryAlreadyExistsError,
    DirectoryMissingError,
    DirectoryNotEmptyError,
    ErrorCode,
    FileAlreadyExistsError,
    FileMissingError,
    FileTooLargeError,
    InvalidExtensionError,
    InvalidPathError,
    LedgerError,
    OperationError,
    PermissionDeniedError,
)
from ledgerfs.fs.factory import create_backend, create_initialized_backend
from ledgerfs.fs.local_disk import LocalDiskBackend
from ledgerfs.fs.protocol import StorageBackend, UploadSource
from ledgerfs.fs.tree import FolderTreeBuilder
from ledgerfs.fs.types import (
    CleanupResult,
    DownloadOptions,
    FileItem,
    FileSystemItem,
    FolderItem,
    ListOptions,
    MoveOptions,
    OperationResult,
    RenameOptions,
    TreeNode,
    UploadOptions,
)

__all__ = [
    "AuthenticationError",
    "CleanupResult",
    "ConfigurationError",
    "DirectoryAlreadyExistsError",
    "DirectoryMissingError",
    "DirectoryNotEmptyError",
    "DownloadOptions",
    "DriveBackend",
    "DriveConfig",
    "ErrorCode",
    "FileAlreadyExistsError",
    "FileItem",
    "FileMissingError",
    "FileSystemItem",
    "FileTooLargeError",
    "FolderItem",
    "FolderTreeBuilder",
    "InvalidExtensionError",
    "InvalidPathError",
    "LedgerError",
    "ListOptions",
    "LocalConfig",
    "LocalDiskBackend",
    "MoveOptions",
    "OperationError",
    "OperationResult",
    "PermissionDeniedError",
    "RefreshingTokenProvider",
    "RenameOptions",
    "StaticTokenProvider",
    "StorageBackend",
    "StorageConfig",
    "TokenProvider",
    "TrackingConfig",
    "TreeNode",
    "UploadOptions",
    "UploadSource",
    "create_backend",
    "create_initialized_backend",
    "load_config",
    "parse_config",
]
