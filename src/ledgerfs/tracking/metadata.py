"""MetadataService — persisted records, references and lifecycle status.

Every public method catches its own failures, logs them (when
``log_errors`` is set) and returns a neutral value, so a metadata problem
never reaches the caller of a file operation. Methods that report an
outcome use three values: ``True`` when a record was changed, ``False``
when no record matched, and ``None`` when the store itself failed.

The service works against generation-1 tables too: columns that are not
present are simply left out of reads and writes, and reference tracking
reports failure until the table is migrated.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy import delete, func, insert, or_, select, update

from ledgerfs.fs.exceptions import OperationError
from ledgerfs.fs.utils import get_basename, join_path, normalize_path, split_path
from ledgerfs.models.files import (
    FOLDER_FILE_TYPE,
    GENERATION_2_COLUMNS,
    FileRecord,
    FileStatus,
)

from .database import create_session_factory
from .file_data import (
    ExtractionData,
    FileDataStructure,
    MergeStrategy,
    add_extraction,
    has_extraction_structure,
    parse_file_data,
    remove_extraction_by_id,
    stringify_file_data,
)
from .migrations import get_existing_columns, migrate_to_v2
from .refs import (
    FileRef,
    FileWithStatus,
    RemoveRefsCriteria,
    Visibility,
    add_ref_to_list,
    build_file_with_status,
    create_file_ref,
    parse_file_refs,
    remove_ref_from_list,
    remove_refs_by_criteria,
    stringify_file_refs,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from sqlalchemy import Table
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
    from sqlalchemy.sql import ColumnElement

    from ledgerfs.models.files import FileRecordBase

logger = logging.getLogger(__name__)

T = TypeVar("T")

METADATA_SOURCE = "metadata"


@dataclass
class FindOrphanedOptions:
    """Filters for orphan scans.

    Attributes:
        older_than: Only records created at least this long ago.
        scope_id: Only records in this scope.
        storage_type: Only this backend's records. None means the service's own.
        limit: Maximum number of results.
        include_folders: Also report directory records.
    """

    older_than: timedelta | None = None
    scope_id: str | None = None
    storage_type: str | None = None
    limit: int | None = None
    include_folders: bool = False


def _now() -> datetime:
    return datetime.now(UTC)


def _aware(value: Any) -> Any:
    # SQLite hands datetimes back without tzinfo; everything is stored as UTC
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class MetadataService:
    """Metadata records for one storage backend.

    Args:
        engine: Async engine of the metadata database.
        storage_type: Provider name the records belong to (``local``,
            ``google_drive``).
        file_model: Concrete ``FileRecordBase`` table class.
        auto_migrate: Create or migrate the table on first use.
        log_errors: Log caught failures.
        merge_strategy: Default strategy for extraction payloads.
        logger: Logger for caught failures and debug events.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        storage_type: str = "local",
        *,
        file_model: type[FileRecordBase] = FileRecord,
        auto_migrate: bool = True,
        log_errors: bool = True,
        merge_strategy: MergeStrategy = "shallow",
        logger: logging.Logger | None = None,
    ) -> None:
        self._engine = engine
        self._session_factory: async_sessionmaker[AsyncSession] = create_session_factory(engine)
        self.storage_type = storage_type
        self._file_model = file_model
        self._table: Table = file_model.__table__  # type: ignore[attr-defined]
        self.auto_migrate = auto_migrate
        self.log_errors = log_errors
        self.merge_strategy: MergeStrategy = merge_strategy
        self._logger = logger or logging.getLogger(__name__)
        self._columns: set[str] | None = None
        self._schema_lock = asyncio.Lock()

    # =========================================================================
    # Schema
    # =========================================================================

    async def ensure_schema(self) -> int:
        """Prepare the table on first use and return its generation (1 or 2)."""
        if self._columns is None:
            async with self._schema_lock:
                if self._columns is None:
                    await self._load_schema()
        assert self._columns is not None
        return 2 if self.supports_refs else 1

    async def _load_schema(self) -> None:
        if self.auto_migrate:
            try:
                await migrate_to_v2(self._engine, self._file_model)
            except Exception:
                # generation-1 behavior keeps working without the overlay
                self._logger.warning(
                    "Metadata migration failed; continuing with existing columns",
                    exc_info=True,
                )
        existing = await get_existing_columns(self._engine, self._file_model)
        if existing is None:
            raise OperationError(f"Metadata table {self._table.name} does not exist")
        self._columns = existing & set(self._table.c.keys())
        if not self.supports_refs:
            self._logger.warning(
                "Metadata table %s is generation 1; reference tracking disabled",
                self._table.name,
            )

    @property
    def supports_refs(self) -> bool:
        return self._columns is not None and set(GENERATION_2_COLUMNS) <= self._columns

    def _require_refs(self) -> None:
        if not self.supports_refs:
            raise OperationError("Reference tracking requires a generation-2 metadata table")

    def _values(self, values: dict[str, Any]) -> dict[str, Any]:
        assert self._columns is not None
        return {k: v for k, v in values.items() if k in self._columns}

    # =========================================================================
    # Internals
    # =========================================================================

    async def _guard(self, operation: str, awaitable: Awaitable[T], default: Any = None) -> Any:
        try:
            await self.ensure_schema()
            return await awaitable
        except Exception:
            if self.log_errors:
                self._logger.error("MetadataService.%s failed", operation, exc_info=True)
            return default
        finally:
            # close the coroutine if ensure_schema raised before awaiting it
            close = getattr(awaitable, "close", None)
            if close is not None:
                close()

    def _select(self):
        assert self._columns is not None
        return select(*[self._table.c[name] for name in sorted(self._columns)])

    def _to_record(self, row: Any) -> FileRecordBase:
        data = {key: _aware(value) for key, value in row._mapping.items()}
        return self._file_model(**data)

    async def _fetch_one(self, *criteria: ColumnElement[bool]) -> FileRecordBase | None:
        async with self._session_factory() as session:
            result = await session.execute(self._select().where(*criteria).limit(1))
            row = result.first()
        return self._to_record(row) if row is not None else None

    async def _fetch_all(self, *criteria: ColumnElement[bool], limit: int | None = None) -> list[FileRecordBase]:
        stmt = self._select().where(*criteria).order_by(self._table.c.file_path)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [self._to_record(row) for row in result.all()]

    async def _update_by_id(self, file_id: str, values: dict[str, Any]) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(self._table).where(self._table.c.id == file_id).values(**self._values(values))
            )
            await session.commit()
        return bool(result.rowcount)

    def _merge_metadata(self, stored: str | None, metadata: dict[str, Any]) -> str:
        """Fold caller metadata into a stored ``file_data`` payload.

        Flat payloads take a shallow merge. Extraction payloads get the
        metadata as one more extraction, since ``merged_data`` is rebuilt
        from ``raw_data`` and would drop keys written into it directly.
        """
        try:
            current = json.loads(stored or "{}")
        except ValueError:
            current = {}
        if has_extraction_structure(current):
            updated = add_extraction(
                parse_file_data(current),
                metadata,
                strategy=self.merge_strategy,
                source=METADATA_SOURCE,
            )
            return stringify_file_data(updated)
        if not isinstance(current, dict):
            current = {}
        return json.dumps({**current, **metadata})

    def _path_criteria(self, path: str, storage_type: str | None = None) -> list[ColumnElement[bool]]:
        return [
            self._table.c.file_path == normalize_path(path),
            self._table.c.storage_type == (storage_type or self.storage_type),
        ]

    def _subtree_criteria(self, path: str) -> list[ColumnElement[bool]]:
        path = normalize_path(path)
        c = self._table.c
        return [
            c.storage_type == self.storage_type,
            or_(c.file_path == path, c.file_path.startswith(path.rstrip("/") + "/", autoescape=True)),
        ]

    # =========================================================================
    # Recording
    # =========================================================================

    async def record_upload(
        self,
        path: str,
        *,
        filename: str | None = None,
        file_type: str | None = None,
        file_data: dict[str, Any] | None = None,
        file_hash: str | None = None,
        file_size: int | None = None,
        scope_id: str | None = None,
        uploaded_by: str | None = None,
        original_filename: str | None = None,
    ) -> FileRecordBase | None:
        """Create the record for *path*, or refresh it after an overwrite.

        Existing references and extraction payloads survive an overwrite;
        a soft-deleted record becomes active again.
        """
        return await self._guard(
            "record_upload",
            self._record_upload(
                normalize_path(path),
                filename=filename,
                file_type=file_type,
                file_data=file_data,
                file_hash=file_hash,
                file_size=file_size,
                scope_id=scope_id,
                uploaded_by=uploaded_by,
                original_filename=original_filename,
            ),
        )

    async def _record_upload(
        self,
        path: str,
        *,
        filename: str | None,
        file_type: str | None,
        file_data: dict[str, Any] | None,
        file_hash: str | None,
        file_size: int | None,
        scope_id: str | None,
        uploaded_by: str | None,
        original_filename: str | None,
    ) -> FileRecordBase | None:
        now = _now()
        name = filename or get_basename(path)
        existing = await self._fetch_one(*self._path_criteria(path))

        if existing is None:
            values: dict[str, Any] = {
                "filename": name,
                "file_type": file_type or "application/octet-stream",
                "file_data": json.dumps(file_data or {}),
                "file_path": path,
                "storage_type": self.storage_type,
                "created_at": now,
                "changed_at": now,
                "file_hash": file_hash,
                "file_size": file_size,
                "file_changed_at": now if file_hash or file_size is not None else None,
                "file_refs": "[]",
                "ref_count": 0,
                "status": FileStatus.ACTIVE.value,
                "scope_id": scope_id,
                "uploaded_by": uploaded_by,
                "original_filename": original_filename,
            }
            record = self._file_model(**values)
            values["id"] = record.id
            async with self._session_factory() as session:
                await session.execute(insert(self._table).values(**self._values(values)))
                await session.commit()
            self._logger.debug("Recorded upload of %s", path)
            return await self._fetch_one(self._table.c.id == record.id)

        updates: dict[str, Any] = {
            "filename": name,
            "changed_at": now,
            "status": FileStatus.ACTIVE.value,
            "deleted_at": None,
        }
        if file_type:
            updates["file_type"] = file_type
        if file_data:
            updates["file_data"] = self._merge_metadata(existing.file_data, file_data)
        if file_hash is not None or file_size is not None:
            if file_hash != existing.file_hash or file_size != existing.file_size:
                updates["file_changed_at"] = now
            updates["file_hash"] = file_hash
            updates["file_size"] = file_size
        for key, value in (
            ("scope_id", scope_id),
            ("uploaded_by", uploaded_by),
            ("original_filename", original_filename),
        ):
            if value is not None:
                updates[key] = value
        await self._update_by_id(existing.id, updates)
        self._logger.debug("Refreshed record of %s", path)
        return await self._fetch_one(self._table.c.id == existing.id)

    async def record_directory_creation(
        self, path: str, metadata: dict[str, Any] | None = None
    ) -> FileRecordBase | None:
        return await self.record_upload(path, file_type=FOLDER_FILE_TYPE, file_data=metadata)

    async def record_access(self, path: str) -> bool | None:
        """Stamp ``changed_at`` on the record for *path*."""
        return await self._guard("record_access", self._touch(normalize_path(path)))

    async def _touch(self, path: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(self._table)
                .where(*self._path_criteria(path))
                .values(changed_at=_now())
            )
            await session.commit()
        return bool(result.rowcount)

    async def record_delete(self, path: str) -> bool | None:
        return await self._guard("record_delete", self._delete_where(self._path_criteria(path)))

    async def delete_record(self, file_id: str) -> bool | None:
        """Remove a record by id, whatever its storage type."""
        return await self._guard(
            "delete_record", self._delete_where([self._table.c.id == file_id])
        )

    async def record_directory_delete(self, path: str, recursive: bool = False) -> bool | None:
        """Remove the directory record, plus every record below it if *recursive*."""
        criteria = self._subtree_criteria(path) if recursive else self._path_criteria(path)
        return await self._guard("record_directory_delete", self._delete_where(criteria))

    async def _delete_where(self, criteria: list[ColumnElement[bool]]) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(delete(self._table).where(*criteria))
            await session.commit()
        self._logger.debug("Deleted %d metadata records", result.rowcount or 0)
        return bool(result.rowcount)

    async def record_move(self, src: str, dst: str) -> bool | None:
        """Repoint the record at *src* (and any records below it) to *dst*."""
        return await self._guard("record_move", self._move(normalize_path(src), normalize_path(dst)))

    async def record_rename(self, path: str, new_name: str) -> bool | None:
        path = normalize_path(path)
        parent, _ = split_path(path)
        return await self._guard("record_rename", self._move(path, join_path(parent, new_name)))

    async def _move(self, src: str, dst: str) -> bool:
        records = await self._fetch_all(*self._subtree_criteria(src))
        if not records:
            return False
        now = _now()
        moved_ids = [record.id for record in records]
        async with self._session_factory() as session:
            # an overwritten destination takes its whole subtree with it
            await session.execute(
                delete(self._table).where(
                    *self._subtree_criteria(dst), self._table.c.id.notin_(moved_ids)
                )
            )
            for record in records:
                new_path = dst + record.file_path[len(src):]
                await session.execute(
                    update(self._table)
                    .where(self._table.c.id == record.id)
                    .values(file_path=new_path, filename=get_basename(new_path), changed_at=now)
                )
            await session.commit()
        self._logger.debug("Moved %d metadata records from %s to %s", len(records), src, dst)
        return True

    # =========================================================================
    # Queries
    # =========================================================================

    async def find_by_path(self, path: str, storage_type: str | None = None) -> FileRecordBase | None:
        return await self._guard(
            "find_by_path", self._fetch_one(*self._path_criteria(path, storage_type))
        )

    async def find_by_id(self, file_id: str) -> FileRecordBase | None:
        return await self._guard("find_by_id", self._fetch_one(self._table.c.id == file_id))

    async def find_by_ids(self, file_ids: list[str]) -> list[FileRecordBase]:
        if not file_ids:
            return []
        return await self._guard(
            "find_by_ids", self._fetch_all(self._table.c.id.in_(file_ids)), default=[]
        )

    async def find_by_storage_type(self, storage_type: str | None = None) -> list[FileRecordBase]:
        return await self._guard(
            "find_by_storage_type",
            self._fetch_all(self._table.c.storage_type == (storage_type or self.storage_type)),
            default=[],
        )

    async def find_in_directory(self, path: str) -> list[FileRecordBase]:
        """Records directly inside *path* (not nested deeper)."""
        path = normalize_path(path)
        prefix = "/" if path == "/" else path + "/"

        async def _find() -> list[FileRecordBase]:
            c = self._table.c
            candidates = await self._fetch_all(
                c.storage_type == self.storage_type,
                c.file_path.startswith(prefix, autoescape=True),
            )
            return [
                r for r in candidates
                if r.file_path != prefix and "/" not in r.file_path[len(prefix):]
            ]

        return await self._guard("find_in_directory", _find(), default=[])

    # =========================================================================
    # Field updates
    # =========================================================================

    async def update_metadata(self, path: str, metadata: dict[str, Any]) -> bool | None:
        """Merge *metadata* into the record's ``file_data`` (shallow for flat payloads)."""

        async def _update() -> bool:
            record = await self._fetch_one(*self._path_criteria(path))
            if record is None:
                return False
            merged = self._merge_metadata(record.file_data, metadata)
            return await self._update_by_id(record.id, {"file_data": merged, "changed_at": _now()})

        return await self._guard("update_metadata", _update())

    async def update_fields(self, file_id: str, **fields: Any) -> bool | None:
        fields.setdefault("changed_at", _now())
        return await self._guard("update_fields", self._update_by_id(file_id, fields))

    async def update_status(self, file_id: str, status: FileStatus) -> bool | None:
        if status is FileStatus.ORPHANED:
            self._logger.warning("Orphaned is derived from references and is never stored")
            return False
        return await self.update_fields(file_id, status=status.value)

    async def update_verification(self, file_id: str, exists: bool) -> bool | None:
        """Stamp ``storage_verified_at``; mark the record missing if *exists* is False."""
        fields: dict[str, Any] = {"storage_verified_at": _now()}
        if not exists:
            fields["status"] = FileStatus.MISSING.value
        return await self._guard("update_verification", self._update_by_id(file_id, fields))

    # =========================================================================
    # References
    # =========================================================================

    async def _write_refs(self, file_id: str, refs: list[FileRef], **extra: Any) -> bool:
        values = {
            "file_refs": stringify_file_refs(refs),
            "ref_count": len(refs),
            "changed_at": _now(),
            **extra,
        }
        return await self._update_by_id(file_id, values)

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
    ) -> FileRef | None:
        """Append a reference and mark the record active. Returns the new ref."""

        async def _add() -> FileRef | None:
            self._require_refs()
            record = await self._fetch_one(self._table.c.id == file_id)
            if record is None:
                return None
            ref = create_file_ref(
                entity_type,
                entity_id,
                created_by=created_by,
                visibility=visibility,
                label=label,
                metadata=metadata,
            )
            refs = add_ref_to_list(parse_file_refs(record.file_refs), ref)
            await self._write_refs(file_id, refs, status=FileStatus.ACTIVE.value, deleted_at=None)
            self._logger.debug("Added ref %s to %s", ref.ref_id, record.file_path)
            return ref

        return await self._guard("add_ref", _add())

    async def remove_ref(self, file_id: str, ref_id: str) -> int | None:
        """Remove one reference. Returns the remaining count, None if the record is absent."""

        async def _remove() -> int | None:
            self._require_refs()
            record = await self._fetch_one(self._table.c.id == file_id)
            if record is None:
                return None
            refs = remove_ref_from_list(parse_file_refs(record.file_refs), ref_id)
            await self._write_refs(file_id, refs)
            return len(refs)

        return await self._guard("remove_ref", _remove())

    async def remove_refs_by_criteria(self, criteria: RemoveRefsCriteria) -> int | None:
        """Remove matching references from every selected record.

        ``file_id`` and ``scope_id`` select records; without either, every
        record of this storage type is scanned. Each record's list is
        filtered on its own. Returns the number of references removed.
        """

        async def _remove() -> int:
            self._require_refs()
            if not criteria.has_ref_criteria:
                return 0
            c = self._table.c
            where: list[ColumnElement[bool]] = [func.coalesce(c.ref_count, 0) > 0]
            if criteria.file_id:
                where.append(c.id == criteria.file_id)
            else:
                where.append(c.storage_type == self.storage_type)
            if criteria.scope_id:
                where.append(c.scope_id == criteria.scope_id)

            removed = 0
            for record in await self._fetch_all(*where):
                refs = parse_file_refs(record.file_refs)
                kept = remove_refs_by_criteria(refs, criteria)
                if len(kept) != len(refs):
                    await self._write_refs(record.id, kept)
                    removed += len(refs) - len(kept)
            return removed

        return await self._guard("remove_refs_by_criteria", _remove())

    async def get_refs(self, file_id: str) -> list[FileRef]:
        record = await self.find_by_id(file_id)
        return parse_file_refs(record.file_refs) if record is not None else []

    async def get_file_with_status(self, file_id: str) -> FileWithStatus | None:
        record = await self.find_by_id(file_id)
        return build_file_with_status(record) if record is not None else None

    async def get_files_with_status(self, file_ids: list[str]) -> list[FileWithStatus]:
        return [build_file_with_status(r) for r in await self.find_by_ids(file_ids)]

    async def soft_delete(self, file_id: str) -> bool | None:
        """Mark the record soft-deleted, keeping the row and its references."""

        async def _soft_delete() -> bool:
            self._require_refs()
            now = _now()
            return await self._update_by_id(
                file_id,
                {"status": FileStatus.SOFT_DELETED.value, "deleted_at": now, "changed_at": now},
            )

        return await self._guard("soft_delete", _soft_delete())

    async def find_orphaned(self, options: FindOrphanedOptions | None = None) -> list[FileWithStatus]:
        """Records with no references that are not soft-deleted.

        Orphan status is never stored; it is evaluated here on every scan.
        """
        options = options or FindOrphanedOptions()

        async def _find() -> list[FileWithStatus]:
            self._require_refs()
            c = self._table.c
            where: list[ColumnElement[bool]] = [
                func.coalesce(c.ref_count, 0) == 0,
                func.coalesce(c.status, FileStatus.ACTIVE.value) != FileStatus.SOFT_DELETED.value,
                c.storage_type == (options.storage_type or self.storage_type),
            ]
            if not options.include_folders:
                where.append(c.file_type != FOLDER_FILE_TYPE)
            if options.scope_id:
                where.append(c.scope_id == options.scope_id)
            if options.older_than is not None:
                where.append(c.created_at <= _now() - options.older_than)
            records = await self._fetch_all(*where, limit=options.limit)
            return [build_file_with_status(r) for r in records]

        return await self._guard("find_orphaned", _find(), default=[])

    # =========================================================================
    # Extractions
    # =========================================================================

    async def get_file_data(self, path: str) -> FileDataStructure | None:
        record = await self.find_by_path(path)
        return parse_file_data(record.file_data) if record is not None else None

    async def add_extraction(
        self,
        path: str,
        data: dict[str, Any],
        *,
        source: str | None = None,
        strategy: MergeStrategy | None = None,
    ) -> ExtractionData | None:
        """Append an extraction to the record's ``file_data`` and re-merge."""

        async def _add() -> ExtractionData | None:
            record = await self._fetch_one(*self._path_criteria(path))
            if record is None:
                return None
            updated = add_extraction(
                parse_file_data(record.file_data),
                data,
                strategy=strategy or self.merge_strategy,
                source=source,
            )
            await self._update_by_id(
                record.id, {"file_data": stringify_file_data(updated), "changed_at": _now()}
            )
            return updated.raw_data[-1]

        return await self._guard("add_extraction", _add())

    async def remove_extraction(
        self,
        path: str,
        extraction_id: str,
        *,
        strategy: MergeStrategy | None = None,
        recalculate_merged: bool = True,
    ) -> bool | None:

        async def _remove() -> bool:
            record = await self._fetch_one(*self._path_criteria(path))
            if record is None:
                return False
            result = remove_extraction_by_id(
                parse_file_data(record.file_data),
                extraction_id,
                strategy=strategy or self.merge_strategy,
                recalculate_merged=recalculate_merged,
            )
            if not result.success or result.data is None:
                return False
            return await self._update_by_id(
                record.id, {"file_data": stringify_file_data(result.data), "changed_at": _now()}
            )

        return await self._guard("remove_extraction", _remove())
