"""Metadata tracking — records, references, extractions, migrations."""

from ledgerfs.tracking.database import create_session_factory, open_engine, sqlite_url
from ledgerfs.tracking.file_data import ExtractionData, FileDataStructure, MergeStrategy
from ledgerfs.tracking.metadata import FindOrphanedOptions, MetadataService
from ledgerfs.tracking.migrations import (
    MigrationResult,
    create_schema,
    get_schema_generation,
    migrate_to_v2,
)
from ledgerfs.tracking.recorder import MetadataRecorder
from ledgerfs.tracking.refs import FileRef, FileWithStatus, RemoveRefsCriteria

__all__ = [
    "ExtractionData",
    "FileDataStructure",
    "FileRef",
    "FileWithStatus",
    "FindOrphanedOptions",
    "MergeStrategy",
    "MetadataRecorder",
    "MetadataService",
    "MigrationResult",
    "RemoveRefsCriteria",
    "create_schema",
    "create_session_factory",
    "get_schema_generation",
    "migrate_to_v2",
    "open_engine",
    "sqlite_url",
]
