"""SQLModel database models for ledgerfs."""

from ledgerfs.models.files import (
    DEFAULT_TABLE_NAME,
    FOLDER_FILE_TYPE,
    FileRecord,
    FileRecordBase,
    FileStatus,
)

__all__ = [
    "DEFAULT_TABLE_NAME",
    "FOLDER_FILE_TYPE",
    "FileRecord",
    "FileRecordBase",
    "FileStatus",
]
