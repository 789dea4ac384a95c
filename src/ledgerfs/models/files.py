"""FileRecord model: one metadata row per (file_path, storage_type).

Provides ``FileRecordBase`` as a non-table base class. Subclass with
``table=True`` and a custom ``__tablename__`` to keep records in a
different table; the default is ``ledgerfs_files``.

Columns come in two generations. Generation 1 is the original identity and
payload set; generation 2 adds hashing, references and lifecycle status
and is nullable throughout so generation-1 rows stay valid.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import DateTime, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_TABLE_NAME = "ledgerfs_files"

FOLDER_FILE_TYPE = "folder"
"""``file_type`` stored for directory records."""


class FileStatus(str, Enum):
    """Lifecycle status of a tracked file.

    ``ORPHANED`` is a label for query results only: whether a record is
    orphaned is always computed from ``ref_count`` and ``status``.
    """

    ACTIVE = "active"
    ORPHANED = "orphaned"
    SOFT_DELETED = "soft_deleted"
    MISSING = "missing"


GENERATION_1_COLUMNS: tuple[str, ...] = (
    "id",
    "filename",
    "file_type",
    "file_data",
    "created_at",
    "changed_at",
    "file_path",
    "storage_type",
)

GENERATION_2_COLUMNS: tuple[str, ...] = (
    "file_hash",
    "file_size",
    "file_changed_at",
    "file_refs",
    "ref_count",
    "status",
    "scope_id",
    "uploaded_by",
    "storage_verified_at",
    "deleted_at",
    "original_filename",
)


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class FileRecordBase(SQLModel):
    """Base fields for a metadata record. Subclass with ``table=True`` for a concrete table."""

    # generation 1
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    filename: str = Field(default="")
    file_type: str = Field(default="")
    file_data: str | None = Field(default="{}", sa_type=Text)
    created_at: datetime = Field(default_factory=_now, sa_type=DateTime(timezone=True))
    changed_at: datetime = Field(default_factory=_now, sa_type=DateTime(timezone=True))
    file_path: str = Field(index=True)
    storage_type: str = Field(index=True)

    # generation 2
    file_hash: str | None = Field(default=None, index=True)
    file_size: int | None = Field(default=None)
    file_changed_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    file_refs: str | None = Field(default="[]", sa_type=Text)
    ref_count: int | None = Field(default=0)
    status: str | None = Field(default=FileStatus.ACTIVE.value, index=True)
    scope_id: str | None = Field(default=None, index=True)
    uploaded_by: str | None = Field(default=None)
    storage_verified_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    deleted_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    original_filename: str | None = Field(default=None)

    @property
    def is_directory(self) -> bool:
        return self.file_type == FOLDER_FILE_TYPE


class FileRecord(FileRecordBase, table=True):
    """Default metadata table — ``ledgerfs_files``."""

    __tablename__ = DEFAULT_TABLE_NAME
    __table_args__ = (
        UniqueConstraint("file_path", "storage_type", name="uq_ledgerfs_files_path_storage"),
    )
