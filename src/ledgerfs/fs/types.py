"""Result types: OperationResult, FileItem, FolderItem, TreeNode, option bags."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Generic, TypeVar, Union

from .exceptions import ErrorCode, LedgerError

if TYPE_CHECKING:
    from collections.abc import Awaitable

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[float, int, int], None]
"""``(percent_complete, bytes_so_far, total_bytes)``."""


# =============================================================================
# Items
# =============================================================================


@dataclass
class FileItem:
    """A file as seen through a storage backend."""

    id: str
    name: str
    path: str
    size: int = 0
    mime_type: str = "application/octet-stream"
    created_at: datetime | None = None
    modified_at: datetime | None = None
    parent_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_directory(self) -> bool:
        return False


@dataclass
class FolderItem:
    """A directory as seen through a storage backend.

    ``children`` is ``None`` until something populates it.
    """

    id: str
    name: str
    path: str
    created_at: datetime | None = None
    modified_at: datetime | None = None
    parent_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    children: list[FileSystemItem] | None = None

    @property
    def is_directory(self) -> bool:
        return True


FileSystemItem = Union[FileItem, FolderItem]


@dataclass
class TreeNode:
    """Folder-only tree node produced by the folder tree builder."""

    id: str
    name: str
    path: str
    children: list[TreeNode] = field(default_factory=list)


# =============================================================================
# Options
# =============================================================================


@dataclass
class UploadOptions:
    """Upload options.

    ``on_progress`` receives ``(percent, bytes_sent, total)``. The local
    backend reports after every chunk; the drive backend sends the body in a
    single request and reports 0% before it and 100% after. Streams of
    unknown length get no progress reports on either backend.
    """

    overwrite: bool = False
    on_progress: ProgressCallback | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class DownloadOptions:
    on_progress: ProgressCallback | None = None


@dataclass
class MoveOptions:
    overwrite: bool = False


@dataclass
class RenameOptions:
    overwrite: bool = False


@dataclass
class ListOptions:
    """Listing options.

    ``filter`` receives each item and keeps it when it returns True. When
    listing recursively, a folder rejected by ``filter`` is still descended.
    """

    recursive: bool = False
    include_hidden: bool = False
    filter: Callable[[FileSystemItem], bool] | None = None


# =============================================================================
# Results
# =============================================================================


@dataclass
class OperationResult(Generic[T]):
    """Outcome of a storage operation.

    ``data`` is set only on success; ``error`` and ``error_code`` only on
    failure. Use :meth:`ok` and :meth:`fail` rather than the constructor.
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: ErrorCode | None = None

    @classmethod
    def ok(cls, data: T | None = None) -> OperationResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls,
        error: str | LedgerError,
        code: ErrorCode = ErrorCode.OPERATION_FAILED,
    ) -> OperationResult[T]:
        if isinstance(error, LedgerError):
            return cls(success=False, error=error.message, error_code=error.code)
        return cls(success=False, error=error, error_code=code)

    def __bool__(self) -> bool:
        return self.success


async def capture(operation: str, awaitable: Awaitable[T]) -> OperationResult[T]:
    """Await *awaitable* and wrap its value, or its failure, in a result.

    ``LedgerError`` subclasses are expected outcomes and keep their message
    and code. Anything else is logged and reported with a generic message.
    """
    try:
        return OperationResult.ok(await awaitable)
    except LedgerError as e:
        logger.debug("%s failed: %s", operation, e.message)
        return OperationResult.fail(e)
    except Exception as e:
        logger.exception("Unexpected error during %s", operation)
        return OperationResult.fail(f"Failed to {operation}: {e}")


@dataclass
class CleanupResult:
    """Outcome of an orphan cleanup sweep."""

    cleaned: int = 0
    errors: list[str] = field(default_factory=list)
