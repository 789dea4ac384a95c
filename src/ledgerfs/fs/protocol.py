"""StorageBackend protocol — runtime-checkable interfaces.

Each backend is an independent class that satisfies :class:`StorageBackend`
structurally. Shared behavior (path normalization, folder trees) is composed
in from :mod:`ledgerfs.fs.utils` and :mod:`ledgerfs.fs.tree` rather than
inherited.

Expected failures (not found, already exists, policy violations) come back
as ``OperationResult(success=False)``; backends never raise them to callers.
"""

from __future__ import annotations

from collections.abc import AsyncIterable, Iterable
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, Union, runtime_checkable

if TYPE_CHECKING:
    from .types import (
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

UploadSource = Union[str, Path, bytes, bytearray, AsyncIterable[bytes], Iterable[bytes]]
"""A local file path, an in-memory byte sequence, or a stream of byte chunks."""


@runtime_checkable
class StorageBackend(Protocol):
    """Core interface every backend must implement."""

    provider: str

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool: ...

    async def initialize(self) -> None:
        """Prepare the backend for use. Raises ``ConfigurationError``."""
        ...

    async def close(self) -> None:
        """Release connections. No-op if not needed."""
        ...

    # ------------------------------------------------------------------
    # Directories
    # ------------------------------------------------------------------

    async def create_directory(self, path: str) -> OperationResult[FolderItem]: ...

    async def remove_directory(
        self, path: str, recursive: bool = False
    ) -> OperationResult[None]: ...

    # ------------------------------------------------------------------
    # Transfer
    # ------------------------------------------------------------------

    async def upload_file(
        self,
        source: UploadSource,
        path: str,
        options: UploadOptions | None = None,
    ) -> OperationResult[FileItem]: ...

    async def download_file(
        self,
        path: str,
        local_target: str | Path | None = None,
        options: DownloadOptions | None = None,
    ) -> OperationResult[bytes | str]:
        """Return the content as ``bytes``, or the written path when
        *local_target* is given."""
        ...

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    async def move_item(
        self, src: str, dst: str, options: MoveOptions | None = None
    ) -> OperationResult[FileSystemItem]: ...

    async def delete_file(self, path: str) -> OperationResult[None]: ...

    async def rename_file(
        self, path: str, new_name: str, options: RenameOptions | None = None
    ) -> OperationResult[FileItem]: ...

    async def rename_folder(
        self, path: str, new_name: str, options: RenameOptions | None = None
    ) -> OperationResult[FolderItem]: ...

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    async def list_directory(
        self, path: str, options: ListOptions | None = None
    ) -> OperationResult[list[FileSystemItem]]: ...

    async def get_item(self, path: str) -> OperationResult[FileSystemItem]: ...

    async def exists(self, path: str) -> bool: ...

    async def get_folder_tree(
        self, path: str = "/", depth: int = 3
    ) -> OperationResult[list[TreeNode]]: ...
