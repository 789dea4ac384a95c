"""Custom exception hierarchy for the ledgerfs storage layer.

Backends raise these internally; the result boundary in
:mod:`ledgerfs.fs.types` turns them into failed ``OperationResult`` values,
so callers of a backend only ever see them through ``error_code``.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Kind of failure carried by an error or a failed result."""

    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    DIRECTORY_NOT_FOUND = "DIRECTORY_NOT_FOUND"
    FILE_EXISTS = "FILE_EXISTS"
    DIRECTORY_EXISTS = "DIRECTORY_EXISTS"
    DIRECTORY_NOT_EMPTY = "DIRECTORY_NOT_EMPTY"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    INVALID_PATH = "INVALID_PATH"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    INVALID_EXTENSION = "INVALID_EXTENSION"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    OPERATION_FAILED = "OPERATION_FAILED"


class LedgerError(Exception):
    """Base exception for all ledgerfs errors."""

    code: ErrorCode = ErrorCode.OPERATION_FAILED

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class FileMissingError(LedgerError):
    """Raised when a file path does not exist."""

    code = ErrorCode.FILE_NOT_FOUND

    def __init__(self, path: str) -> None:
        super().__init__(f"File not found: {path}", {"path": path})


class DirectoryMissingError(LedgerError):
    """Raised when a directory path does not exist."""

    code = ErrorCode.DIRECTORY_NOT_FOUND

    def __init__(self, path: str) -> None:
        super().__init__(f"Directory not found: {path}", {"path": path})


class FileAlreadyExistsError(LedgerError):
    """Raised when a file already occupies the target path."""

    code = ErrorCode.FILE_EXISTS

    def __init__(self, path: str) -> None:
        super().__init__(f"File already exists: {path}", {"path": path})


class DirectoryAlreadyExistsError(LedgerError):
    """Raised when a directory already occupies the target path."""

    code = ErrorCode.DIRECTORY_EXISTS

    def __init__(self, path: str) -> None:
        super().__init__(f"Directory already exists: {path}", {"path": path})


class DirectoryNotEmptyError(LedgerError):
    """Raised when removing a non-empty directory without ``recursive``."""

    code = ErrorCode.DIRECTORY_NOT_EMPTY

    def __init__(self, path: str) -> None:
        super().__init__(f"Directory is not empty: {path}", {"path": path})


class PermissionDeniedError(LedgerError):
    """Raised when the storage medium refuses access to a path."""

    code = ErrorCode.PERMISSION_DENIED

    def __init__(self, path: str) -> None:
        super().__init__(f"Permission denied: {path}", {"path": path})


class InvalidPathError(LedgerError):
    """Raised on null bytes or a path that escapes its base."""

    code = ErrorCode.INVALID_PATH

    def __init__(self, path: str, reason: str = "Invalid path") -> None:
        super().__init__(f"{reason}: {path}", {"path": path, "reason": reason})


class FileTooLargeError(LedgerError):
    """Raised when content exceeds the configured maximum size."""

    code = ErrorCode.FILE_TOO_LARGE

    def __init__(self, path: str, size: int, max_size: int) -> None:
        super().__init__(
            f"File too large ({size:,} bytes, limit {max_size:,}): {path}",
            {"path": path, "size": size, "max_size": max_size},
        )


class InvalidExtensionError(LedgerError):
    """Raised when a file extension is not on the allow-list."""

    code = ErrorCode.INVALID_EXTENSION

    def __init__(self, path: str, extension: str, allowed: list[str]) -> None:
        super().__init__(
            f"File extension not allowed ({extension or 'none'}): {path}",
            {"path": path, "extension": extension, "allowed": allowed},
        )


class AuthenticationError(LedgerError):
    """Raised when the cloud backend rejects or lacks credentials."""

    code = ErrorCode.AUTHENTICATION_FAILED


class ConfigurationError(LedgerError):
    """Raised when a required setting is missing or malformed."""

    code = ErrorCode.CONFIGURATION_ERROR


class OperationError(LedgerError):
    """Raised on unexpected storage failures (disk I/O, network, etc.)."""

    code = ErrorCode.OPERATION_FAILED
