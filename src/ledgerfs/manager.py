"""FileManager and TrackedFileManager — the public entry points.

``FileManager`` is a thin facade over one :class:`StorageBackend` with a few
conveniences on top. ``TrackedFileManager`` adds a metadata record for every
successful mutation: the physical operation runs first and its result is
returned unchanged, while the record is written through a
:class:`MetadataRecorder` either in the background or, with
``await_recording``, before the call returns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ledgerfs.fs.config import TrackingConfig
from ledgerfs.fs.exceptions import ErrorCode
from ledgerfs.fs.types import (
    CleanupResult,
    FileItem,
    FolderItem,
    OperationResult,
    UploadOptions,
)
from ledgerfs.fs.utils import get_basename, guess_mime_type, normalize_path
from ledgerfs.hashing import ContentHasher, get_default_hasher
from ledgerfs.models.files import FileRecord
from ledgerfs.tracking.metadata import FindOrphanedOptions, MetadataService
from ledgerfs.tracking.recorder import MetadataRecorder

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncEngine

    from ledgerfs.fs.protocol import StorageBackend, UploadSource
    from ledgerfs.fs.types import (
        DownloadOptions,
        FileSystemItem,
        ListOptions,
        MoveOptions,
        RenameOptions,
        TreeNode,
    )
    from ledgerfs.models.files import FileRecordBase
    from ledgerfs.tracking.file_data import ExtractionData
    from ledgerfs.tracking.refs import FileRef, FileWithStatus, RemoveRefsCriteria, Visibility

logger = logging.getLogger(__name__)

_PHYSICAL_MISSING = (ErrorCode.FILE_NOT_FOUND, ErrorCode.DIRECTORY_NOT_FOUND)


@runtime_checkable
class ExtractionProvider(Protocol):
    """Turns file content into structured data stored with the record."""

    async def extract(self, data: bytes, *, filename: str, mime_type: str) -> dict[str, Any]: ...


@dataclass
class RefSpec:
    """The reference to attach in :meth:`TrackedFileManager.upload_file_with_ref`."""

    entity_type: str
    entity_id: str
    created_by: str | None = None
    visibility: Visibility | None = None
    label: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass
class TrackedUpload:
    """An uploaded item plus the identifiers tracking assigned to it."""

    item: FileItem
    file_id: str | None = None
    ref_id: str | None = None
    extraction: ExtractionData | None = None


# =============================================================================
# FileManager
# =============================================================================


class FileManager:
    """Facade over a single storage backend."""

    def __init__(self, backend: StorageBackend) -> None:
        self.backend = backend

    @property
    def provider(self) -> str:
        return self.backend.provider

    @property
    def is_initialized(self) -> bool:
        return self.backend.is_initialized

    async def initialize(self) -> None:
        await self.backend.initialize()

    async def close(self) -> None:
        await self.backend.close()

    async def __aenter__(self) -> FileManager:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Backend operations
    # ------------------------------------------------------------------

    async def create_directory(self, path: str) -> OperationResult[FolderItem]:
        return await self.backend.create_directory(path)

    async def remove_directory(self, path: str, recursive: bool = False) -> OperationResult[None]:
        return await self.backend.remove_directory(path, recursive)

    async def upload_file(
        self, source: UploadSource, path: str, options: UploadOptions | None = None
    ) -> OperationResult[FileItem]:
        return await self.backend.upload_file(source, path, options)

    async def download_file(
        self,
        path: str,
        local_target: str | Path | None = None,
        options: DownloadOptions | None = None,
    ) -> OperationResult[bytes | str]:
        return await self.backend.download_file(path, local_target, options)

    async def move_item(
        self, src: str, dst: str, options: MoveOptions | None = None
    ) -> OperationResult[FileSystemItem]:
        return await self.backend.move_item(src, dst, options)

    async def delete_file(self, path: str) -> OperationResult[None]:
        return await self.backend.delete_file(path)

    async def rename_file(
        self, path: str, new_name: str, options: RenameOptions | None = None
    ) -> OperationResult[FileItem]:
        return await self.backend.rename_file(path, new_name, options)

    async def rename_folder(
        self, path: str, new_name: str, options: RenameOptions | None = None
    ) -> OperationResult[FolderItem]:
        return await self.backend.rename_folder(path, new_name, options)

    async def list_directory(
        self, path: str, options: ListOptions | None = None
    ) -> OperationResult[list[FileSystemItem]]:
        return await self.backend.list_directory(path, options)

    async def get_item(self, path: str) -> OperationResult[FileSystemItem]:
        return await self.backend.get_item(path)

    async def exists(self, path: str) -> bool:
        return await self.backend.exists(path)

    async def get_folder_tree(self, path: str = "/", depth: int = 3) -> OperationResult[list[TreeNode]]:
        return await self.backend.get_folder_tree(path, depth)

    # ------------------------------------------------------------------
    # Conveniences
    # ------------------------------------------------------------------

    async def write_file(
        self,
        path: str,
        content: str | bytes,
        options: UploadOptions | None = None,
        *,
        encoding: str = "utf-8",
    ) -> OperationResult[FileItem]:
        """Upload in-memory *content*; text is encoded with *encoding*."""
        data = content.encode(encoding) if isinstance(content, str) else content
        return await self.upload_file(data, path, options)

    async def read_file(
        self, path: str, *, encoding: str | None = None
    ) -> OperationResult[bytes | str]:
        """Download *path* into memory, decoding it when *encoding* is given."""
        result = await self.download_file(path)
        if not result.success or encoding is None:
            return result
        data = result.data
        if isinstance(data, bytes):
            try:
                return OperationResult.ok(data.decode(encoding))
            except UnicodeDecodeError as e:
                return OperationResult.fail(f"Cannot decode {path} as {encoding}: {e}")
        return result

    async def copy_file(
        self, src: str, dst: str, options: UploadOptions | None = None
    ) -> OperationResult[FileItem]:
        """Copy by downloading *src* and uploading the bytes to *dst*."""
        downloaded = await self.download_file(src)
        if not downloaded.success:
            return OperationResult(
                success=False, error=downloaded.error, error_code=downloaded.error_code
            )
        data = downloaded.data
        if isinstance(data, str):
            data = data.encode("utf-8")
        return await self.upload_file(data or b"", dst, options)

    async def ensure_directory(self, path: str) -> OperationResult[FolderItem]:
        """Create *path* unless it already exists as a directory."""
        result = await self.create_directory(path)
        if result.success or result.error_code is not ErrorCode.DIRECTORY_EXISTS:
            return result
        existing = await self.get_item(path)
        if existing.success and isinstance(existing.data, FolderItem):
            return OperationResult.ok(existing.data)
        return result


# =============================================================================
# TrackedFileManager
# =============================================================================


class TrackedFileManager(FileManager):
    """FileManager that keeps a metadata record for every tracked file.

    Args:
        backend: Storage backend doing the physical work.
        engine: Async engine of the metadata database.
        tracking: Recording behavior; see :class:`TrackingConfig`.
        file_model: Table class for the records.
        hasher: Content hasher for uploads. Defaults to the shared xxh64 hasher.
        extraction_provider: Default provider for :meth:`upload_and_extract`.
        logger: Receives metadata failures. Defaults to this module's logger.
    """

    def __init__(
        self,
        backend: StorageBackend,
        engine: AsyncEngine,
        tracking: TrackingConfig | None = None,
        *,
        file_model: type[FileRecordBase] = FileRecord,
        hasher: ContentHasher | None = None,
        extraction_provider: ExtractionProvider | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(backend)
        self.tracking = tracking or TrackingConfig()
        self._logger = logger or logging.getLogger(__name__)
        self.metadata = MetadataService(
            engine,
            backend.provider,
            file_model=file_model,
            log_errors=self.tracking.log_errors,
            merge_strategy=self.tracking.merge_strategy,
            logger=self._logger,
        )
        self.recorder = MetadataRecorder(
            max_attempts=self.tracking.max_attempts,
            retry_delay=self.tracking.retry_delay,
            logger=self._logger,
        )
        self.hasher = hasher or get_default_hasher()
        self.extraction_provider = extraction_provider

    async def initialize(self) -> None:
        await super().initialize()
        if not self.tracking.enabled:
            return
        try:
            await self.metadata.ensure_schema()
        except Exception:
            # the store retries schema setup on its next call
            self._logger.error(
                "Metadata store unavailable; file operations continue untracked",
                exc_info=True,
            )

    async def drain(self) -> None:
        """Wait for background metadata writes to finish."""
        await self.recorder.drain()

    async def close(self) -> None:
        await self.drain()
        await super().close()

    async def _record(
        self,
        name: str,
        factory: Callable[[], Awaitable[Any]],
        await_recording: bool | None = None,
    ) -> None:
        if not self.tracking.enabled:
            return
        wait = self.tracking.await_recording if await_recording is None else await_recording
        if wait:
            await self.recorder.run(name, factory)
        else:
            self.recorder.submit(name, factory)

    # ------------------------------------------------------------------
    # Tracked mutations
    # ------------------------------------------------------------------

    async def create_directory(
        self, path: str, *, await_recording: bool | None = None
    ) -> OperationResult[FolderItem]:
        result = await super().create_directory(path)
        if result.success:
            await self._record(
                "record_directory_creation",
                lambda: self.metadata.record_directory_creation(path),
                await_recording,
            )
        return result

    async def remove_directory(
        self, path: str, recursive: bool = False, *, await_recording: bool | None = None
    ) -> OperationResult[None]:
        result = await super().remove_directory(path, recursive)
        if result.success:
            await self._record(
                "record_directory_delete",
                lambda: self.metadata.record_directory_delete(path, recursive),
                await_recording,
            )
        return result

    async def _fingerprint(self, source: UploadSource, skip_hash: bool) -> tuple[str | None, int | None]:
        if isinstance(source, (bytes, bytearray)):
            data = bytes(source)
            if skip_hash:
                return None, len(data)
            return self.hasher.compute_file_info(data)
        if isinstance(source, (str, Path)) and not skip_hash:
            try:
                return await self.hasher.hash_file(source), None
            except OSError:
                # the backend reports the unreadable source itself
                return None, None
        return None, None

    async def upload_file(
        self,
        source: UploadSource,
        path: str,
        options: UploadOptions | None = None,
        *,
        skip_hash: bool = False,
        await_recording: bool | None = None,
        scope_id: str | None = None,
        uploaded_by: str | None = None,
        original_filename: str | None = None,
    ) -> OperationResult[FileItem]:
        """Upload and record the file.

        In-memory and local-path sources are hashed before upload unless
        *skip_hash* is set; the recorded size always comes from the source
        when it is known, else from the uploaded item.
        """
        options = options or UploadOptions()
        file_hash, file_size = await self._fingerprint(source, skip_hash)
        result = await super().upload_file(source, path, options)
        if not result.success or result.data is None:
            return result

        item = result.data
        size = file_size if file_size is not None else item.size
        await self._record(
            "record_upload",
            lambda: self.metadata.record_upload(
                path,
                filename=item.name,
                file_type=item.mime_type,
                file_data=options.metadata or None,
                file_hash=file_hash,
                file_size=size,
                scope_id=scope_id,
                uploaded_by=uploaded_by,
                original_filename=original_filename,
            ),
            await_recording,
        )
        return result

    async def download_file(
        self,
        path: str,
        local_target: str | Path | None = None,
        options: DownloadOptions | None = None,
        *,
        await_recording: bool | None = None,
    ) -> OperationResult[bytes | str]:
        result = await super().download_file(path, local_target, options)
        if result.success and self.tracking.track_downloads:
            await self._record(
                "record_access", lambda: self.metadata.record_access(path), await_recording
            )
        return result

    async def move_item(
        self,
        src: str,
        dst: str,
        options: MoveOptions | None = None,
        *,
        await_recording: bool | None = None,
    ) -> OperationResult[FileSystemItem]:
        result = await super().move_item(src, dst, options)
        if result.success:
            await self._record(
                "record_move", lambda: self.metadata.record_move(src, dst), await_recording
            )
        return result

    async def delete_file(
        self, path: str, *, await_recording: bool | None = None
    ) -> OperationResult[None]:
        result = await super().delete_file(path)
        if result.success:
            await self._record(
                "record_delete", lambda: self.metadata.record_delete(path), await_recording
            )
        return result

    async def rename_file(
        self,
        path: str,
        new_name: str,
        options: RenameOptions | None = None,
        *,
        await_recording: bool | None = None,
    ) -> OperationResult[FileItem]:
        result = await super().rename_file(path, new_name, options)
        if result.success:
            await self._record(
                "record_rename",
                lambda: self.metadata.record_rename(path, new_name),
                await_recording,
            )
        return result

    async def rename_folder(
        self,
        path: str,
        new_name: str,
        options: RenameOptions | None = None,
        *,
        await_recording: bool | None = None,
    ) -> OperationResult[FolderItem]:
        result = await super().rename_folder(path, new_name, options)
        if result.success:
            await self._record(
                "record_rename",
                lambda: self.metadata.record_rename(path, new_name),
                await_recording,
            )
        return result

    # ------------------------------------------------------------------
    # Content checks
    # ------------------------------------------------------------------

    async def get_stored_hash(self, path: str) -> str | None:
        record = await self.metadata.find_by_path(path)
        return record.file_hash if record is not None else None

    async def get_stored_size(self, path: str) -> int | None:
        record = await self.metadata.find_by_path(path)
        return record.file_size if record is not None else None

    async def has_file_changed(self, path: str) -> bool | None:
        """Compare the current content of *path* with its stored hash.

        None when the file is untracked or cannot be read; True when no
        hash was ever stored.
        """
        record = await self.metadata.find_by_path(path)
        if record is None:
            return None
        if not record.file_hash:
            return True
        result = await self.backend.download_file(path)
        if not result.success or result.data is None:
            return None
        data = result.data.encode("utf-8") if isinstance(result.data, str) else result.data
        return self.hasher.has_changed(record.file_hash, data)

    # ------------------------------------------------------------------
    # References
    # ------------------------------------------------------------------

    async def add_ref(
        self,
        file_id: str,
        entity_type: str,
        entity_id: str,
        *,
        created_by: str | None = None,
        visibility: Visibility | None = None,
        label: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str | None:
        """Attach a reference and return its ``ref_id``."""
        ref = await self.metadata.add_ref(
            file_id,
            entity_type,
            entity_id,
            created_by=created_by,
            visibility=visibility,
            label=label,
            metadata=metadata,
        )
        return ref.ref_id if ref is not None else None

    async def remove_ref(self, file_id: str, ref_id: str) -> int | None:
        """Detach a reference and return how many remain."""
        return await self.metadata.remove_ref(file_id, ref_id)

    async def remove_refs_by_criteria(self, criteria: RemoveRefsCriteria) -> int:
        return await self.metadata.remove_refs_by_criteria(criteria) or 0

    async def get_refs(self, file_id: str) -> list[FileRef]:
        return await self.metadata.get_refs(file_id)

    async def get_file_with_status(self, file_id: str) -> FileWithStatus | None:
        return await self.metadata.get_file_with_status(file_id)

    async def get_file_by_id(self, file_id: str) -> FileRecordBase | None:
        return await self.metadata.find_by_id(file_id)

    async def get_files_by_ids(self, file_ids: list[str]) -> list[FileRecordBase]:
        return await self.metadata.find_by_ids(file_ids)

    async def soft_delete_file(self, file_id: str) -> bool:
        return bool(await self.metadata.soft_delete(file_id))

    async def find_orphaned_files(
        self, options: FindOrphanedOptions | None = None
    ) -> list[FileWithStatus]:
        return await self.metadata.find_orphaned(options)

    async def cleanup_orphaned_files(
        self,
        options: FindOrphanedOptions | None = None,
        *,
        soft_delete_only: bool = False,
        delete_physical_files: bool = True,
    ) -> CleanupResult:
        """Soft-delete or remove every orphaned record.

        A physical file that is already gone is not an error. Records of
        another storage type never touch this manager's backend.
        """
        result = CleanupResult()
        for orphan in await self.find_orphaned_files(options):
            record = orphan.record
            if soft_delete_only:
                if await self.metadata.soft_delete(record.id):
                    result.cleaned += 1
                else:
                    result.errors.append(f"Failed to soft-delete {record.file_path}")
                continue

            if delete_physical_files and record.storage_type == self.provider:
                if record.is_directory:
                    deleted = await self.backend.remove_directory(record.file_path)
                else:
                    deleted = await self.backend.delete_file(record.file_path)
                if not deleted.success and deleted.error_code not in _PHYSICAL_MISSING:
                    result.errors.append(
                        f"Failed to delete physical file {record.file_path}: {deleted.error}"
                    )
                    continue

            if await self.metadata.delete_record(record.id):
                result.cleaned += 1
            else:
                result.errors.append(f"Failed to delete record for {record.file_path}")

        if result.cleaned or result.errors:
            self._logger.info(
                "Orphan cleanup: %d cleaned, %d errors", result.cleaned, len(result.errors)
            )
        return result

    async def verify_file_existence(self, file_id: str) -> bool | None:
        """Check the record's file against the backend.

        Stamps ``storage_verified_at`` and marks the record missing when the
        file is gone. None when the record does not exist.
        """
        record = await self.metadata.find_by_id(file_id)
        if record is None:
            return None
        exists = await self.backend.exists(record.file_path)
        await self.metadata.update_verification(file_id, exists)
        return exists

    async def upload_file_with_ref(
        self,
        source: UploadSource,
        path: str,
        ref: RefSpec | None = None,
        options: UploadOptions | None = None,
        *,
        scope_id: str | None = None,
        uploaded_by: str | None = None,
        original_filename: str | None = None,
        skip_hash: bool = False,
    ) -> OperationResult[TrackedUpload]:
        """Upload, wait for the record, then attach *ref* to it."""
        uploaded = await self.upload_file(
            source,
            path,
            options,
            skip_hash=skip_hash,
            await_recording=True,
            scope_id=scope_id,
            uploaded_by=uploaded_by,
            original_filename=original_filename or get_basename(normalize_path(path)),
        )
        if not uploaded.success or uploaded.data is None:
            return OperationResult(
                success=False, error=uploaded.error, error_code=uploaded.error_code
            )

        tracked = TrackedUpload(item=uploaded.data)
        if not self.tracking.enabled:
            return OperationResult.ok(tracked)

        record = await self.metadata.find_by_path(path)
        if record is None:
            return OperationResult.ok(tracked)
        tracked.file_id = record.id
        if ref is not None:
            tracked.ref_id = await self.add_ref(
                record.id,
                ref.entity_type,
                ref.entity_id,
                created_by=ref.created_by or uploaded_by,
                visibility=ref.visibility,
                label=ref.label,
                metadata=ref.metadata,
            )
        return OperationResult.ok(tracked)

    # ------------------------------------------------------------------
    # Extractions
    # ------------------------------------------------------------------

    async def add_extraction(
        self, path: str, data: dict[str, Any], *, source: str | None = None
    ) -> ExtractionData | None:
        return await self.metadata.add_extraction(path, data, source=source)

    async def remove_extraction(self, path: str, extraction_id: str) -> bool:
        return bool(await self.metadata.remove_extraction(path, extraction_id))

    async def upload_and_extract(
        self,
        data: bytes,
        path: str,
        options: UploadOptions | None = None,
        *,
        provider: ExtractionProvider | None = None,
        source: str | None = None,
        scope_id: str | None = None,
        uploaded_by: str | None = None,
    ) -> OperationResult[TrackedUpload]:
        """Upload *data* and store what the extraction provider derives from it.

        A failing provider does not fail the upload; the result simply
        carries no extraction.
        """
        uploaded = await self.upload_file_with_ref(
            data, path, None, options, scope_id=scope_id, uploaded_by=uploaded_by
        )
        if not uploaded.success or uploaded.data is None:
            return uploaded

        extractor = provider or self.extraction_provider
        if extractor is None or not self.tracking.enabled:
            return uploaded

        item = uploaded.data.item
        try:
            extracted = await extractor.extract(
                data,
                filename=item.name,
                mime_type=item.mime_type or guess_mime_type(item.name),
            )
        except Exception:
            self._logger.warning("Extraction failed for %s", path, exc_info=True)
            return uploaded

        uploaded.data.extraction = await self.metadata.add_extraction(
            path, extracted, source=source or type(extractor).__name__
        )
        return uploaded

