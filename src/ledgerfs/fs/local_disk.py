"""LocalDiskBackend — storage backend over a directory on the local disk.

Virtual paths map onto a configured base directory. The backend-native
identifier of an item is its virtual path, so ``id`` and ``parent_id``
are stable across calls.

All blocking I/O runs through ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
import tempfile
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, BinaryIO

from .config import LocalConfig
from .exceptions import (
    ConfigurationError,
    DirectoryAlreadyExistsError,
    DirectoryMissingError,
    DirectoryNotEmptyError,
    FileAlreadyExistsError,
    FileMissingError,
    FileTooLargeError,
    InvalidExtensionError,
    InvalidPathError,
    PermissionDeniedError,
)
from .tree import FolderTreeBuilder
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
    capture,
)
from .utils import (
    ensure_valid_path,
    get_extension,
    guess_mime_type,
    is_hidden,
    join_path,
    normalize_path,
    split_path,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from .protocol import UploadSource
    from .types import ProgressCallback

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class LocalDiskBackend:
    """Storage backend rooted at ``config.base_path``.

    Write policies (extension allow-list, maximum size) are checked before
    anything touches the disk, and uploads land through a temp file plus
    ``replace`` so a rejected or failed write never leaves a partial file.
    """

    provider = "local"

    def __init__(self, config: LocalConfig | None = None) -> None:
        self.config = config or LocalConfig()
        self.base_path = Path(self.config.base_path).resolve()
        self._tree = FolderTreeBuilder(self.list_directory)
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """Create the base directory if needed."""
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return

            def _prepare() -> None:
                if self.base_path.exists() and not self.base_path.is_dir():
                    raise ConfigurationError(
                        f"Local base path is not a directory: {self.base_path}"
                    )
                self.base_path.mkdir(parents=True, exist_ok=True)

            await asyncio.to_thread(_prepare)
            self._initialized = True
            logger.debug("Local backend initialized at %s", self.base_path)

    async def close(self) -> None:
        pass

    async def __aenter__(self) -> LocalDiskBackend:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.close()

    # =========================================================================
    # Path Resolution & Security
    # =========================================================================

    def _resolve_path(self, virtual_path: str) -> Path:
        """Resolve a virtual path to a physical path under ``base_path``.

        Symlinks are rejected; anything resolving outside the base raises
        ``InvalidPathError``.
        """
        virtual_path = ensure_valid_path(virtual_path)
        rel = virtual_path.lstrip("/")
        if not rel:
            return self.base_path

        current = self.base_path
        for part in Path(rel).parts:
            current = current / part
            if current.is_symlink():
                raise PermissionDeniedError(virtual_path)

        resolved = (self.base_path / rel).resolve()
        try:
            resolved.relative_to(self.base_path)
        except ValueError:
            raise InvalidPathError(virtual_path, "Path traversal detected") from None
        return resolved

    def _check_write_policy(self, virtual_path: str, size: int | None) -> None:
        allowed = self.config.allowed_extensions
        if allowed:
            ext = get_extension(virtual_path)
            if ext not in allowed:
                raise InvalidExtensionError(virtual_path, ext, allowed)
        limit = self.config.max_file_size
        if limit and size is not None and size > limit:
            raise FileTooLargeError(virtual_path, size, limit)

    async def _io(self, virtual_path: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Run blocking *fn* in a thread, mapping OS permission errors."""
        try:
            return await asyncio.to_thread(fn, *args)
        except PermissionError:
            raise PermissionDeniedError(virtual_path) from None

    # =========================================================================
    # Item construction
    # =========================================================================

    @staticmethod
    def _make_item(resolved: Path, virtual_path: str) -> FileSystemItem:
        st = resolved.stat()
        parent, name = split_path(virtual_path)
        created = datetime.fromtimestamp(st.st_ctime, tz=UTC)
        modified = datetime.fromtimestamp(st.st_mtime, tz=UTC)
        parent_id = parent if virtual_path != "/" else None
        if resolved.is_dir():
            return FolderItem(
                id=virtual_path,
                name=name,
                path=virtual_path,
                created_at=created,
                modified_at=modified,
                parent_id=parent_id,
            )
        return FileItem(
            id=virtual_path,
            name=name,
            path=virtual_path,
            size=st.st_size,
            mime_type=guess_mime_type(name),
            created_at=created,
            modified_at=modified,
            parent_id=parent_id,
        )

    # =========================================================================
    # Directories
    # =========================================================================

    async def create_directory(self, path: str) -> OperationResult[FolderItem]:
        return await capture("create directory", self._create_directory(path))

    async def _create_directory(self, path: str) -> FolderItem:
        await self.initialize()
        path = normalize_path(path)
        resolved = self._resolve_path(path)

        if resolved.is_dir():
            raise DirectoryAlreadyExistsError(path)
        if resolved.exists():
            raise FileAlreadyExistsError(path)

        def _mkdir() -> FileSystemItem:
            resolved.mkdir(parents=True, exist_ok=False)
            return self._make_item(resolved, path)

        item = await self._io(path, _mkdir)
        logger.debug("Created directory %s", path)
        return item

    async def remove_directory(self, path: str, recursive: bool = False) -> OperationResult[None]:
        return await capture("remove directory", self._remove_directory(path, recursive))

    async def _remove_directory(self, path: str, recursive: bool) -> None:
        await self.initialize()
        path = normalize_path(path)
        if path == "/":
            raise InvalidPathError(path, "Cannot remove the root directory")
        resolved = self._resolve_path(path)

        if not resolved.is_dir():
            raise DirectoryMissingError(path)

        def _remove() -> None:
            if recursive:
                shutil.rmtree(resolved)
                return
            if any(resolved.iterdir()):
                raise DirectoryNotEmptyError(path)
            resolved.rmdir()

        await self._io(path, _remove)
        logger.debug("Removed directory %s (recursive=%s)", path, recursive)

    # =========================================================================
    # Transfer
    # =========================================================================

    async def upload_file(
        self,
        source: UploadSource,
        path: str,
        options: UploadOptions | None = None,
    ) -> OperationResult[FileItem]:
        return await capture("upload file", self._upload_file(source, path, options or UploadOptions()))

    async def _upload_file(
        self, source: UploadSource, path: str, options: UploadOptions
    ) -> FileItem:
        await self.initialize()
        path = normalize_path(path)
        if path == "/":
            raise InvalidPathError(path, "Cannot upload to the root directory")
        resolved = self._resolve_path(path)

        chunks, total = await self._open_source(source)
        self._check_write_policy(path, total)

        if resolved.is_dir():
            raise DirectoryAlreadyExistsError(path)
        if resolved.exists() and not options.overwrite:
            raise FileAlreadyExistsError(path)

        await self._io(path, lambda: resolved.parent.mkdir(parents=True, exist_ok=True))
        await self._write_atomic(path, resolved, chunks, total, options.on_progress)

        item = await self._io(path, self._make_item, resolved, path)
        if options.metadata:
            item.metadata.update(options.metadata)
        logger.debug("Uploaded %s (%d bytes)", path, item.size)
        return item

    async def _open_source(
        self, source: UploadSource
    ) -> tuple[AsyncIterator[bytes], int | None]:
        """Return a chunk iterator over *source* and its size when known."""
        if isinstance(source, (bytes, bytearray)):
            data = bytes(source)
            return _iter_bytes(data), len(data)

        if isinstance(source, (str, Path)):
            src = Path(source)
            if not await asyncio.to_thread(src.is_file):
                raise FileMissingError(str(source))
            size = (await asyncio.to_thread(src.stat)).st_size
            return _iter_file(src), size

        if isinstance(source, AsyncIterable):
            return aiter(source), None

        if isinstance(source, Iterable):
            return _iter_sync(source), None

        raise TypeError(f"Unsupported upload source: {type(source).__name__}")

    async def _write_atomic(
        self,
        virtual_path: str,
        resolved: Path,
        chunks: AsyncIterator[bytes],
        total: int | None,
        on_progress: ProgressCallback | None,
    ) -> int:
        limit = self.config.max_file_size
        fd, tmp_name = await self._io(
            virtual_path,
            lambda: tempfile.mkstemp(dir=str(resolved.parent), suffix=".tmp"),
        )
        tmp_path = Path(tmp_name)
        written = 0
        try:
            with os.fdopen(fd, "wb") as fh:
                async for chunk in chunks:
                    written += len(chunk)
                    # streams have no declared size, so the limit applies as they arrive
                    if limit and written > limit:
                        raise FileTooLargeError(virtual_path, written, limit)
                    await asyncio.to_thread(fh.write, chunk)
                    if on_progress is not None and total:
                        on_progress(written / total * 100, written, total)
            await asyncio.to_thread(tmp_path.replace, resolved)
        except BaseException:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise
        if on_progress is not None and total == 0:
            on_progress(100.0, 0, 0)
        return written

    async def download_file(
        self,
        path: str,
        local_target: str | Path | None = None,
        options: DownloadOptions | None = None,
    ) -> OperationResult[bytes | str]:
        return await capture(
            "download file",
            self._download_file(path, local_target, options or DownloadOptions()),
        )

    async def _download_file(
        self, path: str, local_target: str | Path | None, options: DownloadOptions
    ) -> bytes | str:
        await self.initialize()
        path = normalize_path(path)
        resolved = self._resolve_path(path)
        if not resolved.is_file():
            raise FileMissingError(path)

        total = (await self._io(path, resolved.stat)).st_size
        on_progress = options.on_progress
        received = 0

        if local_target is None:
            parts: list[bytes] = []
            async for chunk in _iter_file(resolved):
                parts.append(chunk)
                received += len(chunk)
                if on_progress is not None and total:
                    on_progress(received / total * 100, received, total)
            return b"".join(parts)

        target = Path(local_target)
        await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
        fh: BinaryIO = await asyncio.to_thread(target.open, "wb")
        try:
            async for chunk in _iter_file(resolved):
                await asyncio.to_thread(fh.write, chunk)
                received += len(chunk)
                if on_progress is not None and total:
                    on_progress(received / total * 100, received, total)
        finally:
            await asyncio.to_thread(fh.close)
        return str(target)

    # =========================================================================
    # Mutation
    # =========================================================================

    async def move_item(
        self, src: str, dst: str, options: MoveOptions | None = None
    ) -> OperationResult[FileSystemItem]:
        return await capture("move item", self._move_item(src, dst, options or MoveOptions()))

    async def _move_item(self, src: str, dst: str, options: MoveOptions) -> FileSystemItem:
        await self.initialize()
        src = normalize_path(src)
        dst = normalize_path(dst)
        src_resolved = self._resolve_path(src)
        dst_resolved = self._resolve_path(dst)

        if src == "/" or not src_resolved.exists():
            raise FileMissingError(src)
        if src == dst:
            return await self._io(dst, self._make_item, dst_resolved, dst)
        if dst.startswith(src + "/"):
            raise InvalidPathError(dst, "Cannot move a directory into itself")
        await self._replace_target(dst, dst_resolved, options.overwrite)

        def _move() -> FileSystemItem:
            dst_resolved.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(src_resolved), str(dst_resolved))
            return self._make_item(dst_resolved, dst)

        item = await self._io(dst, _move)
        logger.debug("Moved %s to %s", src, dst)
        return item

    async def _replace_target(self, path: str, resolved: Path, overwrite: bool) -> None:
        """Fail if *resolved* exists, or clear it when *overwrite* is set."""
        if not resolved.exists():
            return
        if not overwrite:
            if resolved.is_dir():
                raise DirectoryAlreadyExistsError(path)
            raise FileAlreadyExistsError(path)

        def _clear() -> None:
            if resolved.is_dir():
                shutil.rmtree(resolved)
            else:
                resolved.unlink()

        await self._io(path, _clear)

    async def delete_file(self, path: str) -> OperationResult[None]:
        return await capture("delete file", self._delete_file(path))

    async def _delete_file(self, path: str) -> None:
        await self.initialize()
        path = normalize_path(path)
        resolved = self._resolve_path(path)
        # directories are not files; use remove_directory
        if not resolved.is_file():
            raise FileMissingError(path)
        await self._io(path, resolved.unlink)
        logger.debug("Deleted %s", path)

    async def rename_file(
        self, path: str, new_name: str, options: RenameOptions | None = None
    ) -> OperationResult[FileItem]:
        return await capture(
            "rename file", self._rename(path, new_name, options or RenameOptions(), folder=False)
        )

    async def rename_folder(
        self, path: str, new_name: str, options: RenameOptions | None = None
    ) -> OperationResult[FolderItem]:
        return await capture(
            "rename folder", self._rename(path, new_name, options or RenameOptions(), folder=True)
        )

    async def _rename(
        self, path: str, new_name: str, options: RenameOptions, *, folder: bool
    ) -> Any:
        await self.initialize()
        path = normalize_path(path)
        if not new_name or "/" in new_name or "\\" in new_name or new_name in (".", ".."):
            raise InvalidPathError(new_name, "Invalid name")

        resolved = self._resolve_path(path)
        if folder:
            if path == "/" or not resolved.is_dir():
                raise DirectoryMissingError(path)
        elif not resolved.is_file():
            raise FileMissingError(path)

        parent, _ = split_path(path)
        new_path = join_path(parent, new_name)
        if not folder:
            self._check_write_policy(new_path, None)
        new_resolved = self._resolve_path(new_path)
        if new_path == path:
            return await self._io(path, self._make_item, resolved, path)
        await self._replace_target(new_path, new_resolved, options.overwrite)

        def _rename() -> FileSystemItem:
            resolved.rename(new_resolved)
            return self._make_item(new_resolved, new_path)

        item = await self._io(new_path, _rename)
        logger.debug("Renamed %s to %s", path, new_path)
        return item

    # =========================================================================
    # Query
    # =========================================================================

    async def list_directory(
        self, path: str, options: ListOptions | None = None
    ) -> OperationResult[list[FileSystemItem]]:
        return await capture("list directory", self._list_directory(path, options or ListOptions()))

    async def _list_directory(self, path: str, options: ListOptions) -> list[FileSystemItem]:
        await self.initialize()
        path = normalize_path(path)
        resolved = self._resolve_path(path)
        if not resolved.is_dir():
            raise DirectoryMissingError(path)

        def _scan() -> list[FileSystemItem]:
            entries: list[FileSystemItem] = []
            for entry in os.scandir(resolved):
                if not options.include_hidden and is_hidden(entry.name):
                    continue
                if entry.is_symlink():
                    continue
                try:
                    entries.append(
                        self._make_item(Path(entry.path), join_path(path, entry.name))
                    )
                except OSError:
                    continue
            entries.sort(key=lambda x: (not x.is_directory, x.name.lower(), x.name))
            return entries

        entries = await self._io(path, _scan)

        items: list[FileSystemItem] = []
        for item in entries:
            if options.filter is None or options.filter(item):
                items.append(item)
            if options.recursive and item.is_directory:
                items.extend(await self._list_directory(item.path, options))
        return items

    async def get_item(self, path: str) -> OperationResult[FileSystemItem]:
        return await capture("get item", self._get_item(path))

    async def _get_item(self, path: str) -> FileSystemItem:
        await self.initialize()
        path = normalize_path(path)
        resolved = self._resolve_path(path)
        if not resolved.exists():
            raise FileMissingError(path)
        return await self._io(path, self._make_item, resolved, path)

    async def exists(self, path: str) -> bool:
        try:
            await self.initialize()
            resolved = self._resolve_path(path)
        except (InvalidPathError, PermissionDeniedError):
            return False
        return await asyncio.to_thread(resolved.exists)

    async def get_folder_tree(
        self, path: str = "/", depth: int = 3
    ) -> OperationResult[list[TreeNode]]:
        return await capture(
            "get folder tree", self._tree.build_tree(normalize_path(path), depth)
        )


# =============================================================================
# Chunk iterators
# =============================================================================


async def _iter_bytes(data: bytes) -> AsyncIterator[bytes]:
    for start in range(0, len(data), CHUNK_SIZE):
        yield data[start:start + CHUNK_SIZE]


async def _iter_file(path: Path) -> AsyncIterator[bytes]:
    fh: BinaryIO = await asyncio.to_thread(path.open, "rb")
    try:
        while True:
            chunk = await asyncio.to_thread(fh.read, CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        await asyncio.to_thread(fh.close)


async def _iter_sync(chunks: Iterable[bytes]) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield bytes(chunk)
