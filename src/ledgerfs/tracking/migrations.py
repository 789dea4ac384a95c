"""Schema creation and the generation 1 → 2 migration.

The migration is additive and idempotent: it only adds generation-2
columns that are absent, creates missing indexes, and backfills
``file_refs``, ``ref_count`` and ``status`` on rows that predate them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlalchemy import func, inspect, or_, text, update

from ledgerfs.models.files import GENERATION_2_COLUMNS, FileRecord, FileStatus

if TYPE_CHECKING:
    from sqlalchemy import Connection, Table
    from sqlalchemy.ext.asyncio import AsyncEngine

    from ledgerfs.models.files import FileRecordBase

logger = logging.getLogger(__name__)


@dataclass
class MigrationResult:
    created_table: bool = False
    added_columns: list[str] = field(default_factory=list)
    backfilled_rows: int = 0


def _table(file_model: type[FileRecordBase]) -> Table:
    return file_model.__table__  # type: ignore[attr-defined]


def _existing_columns(conn: Connection, table_name: str) -> set[str] | None:
    inspector = inspect(conn)
    if not inspector.has_table(table_name):
        return None
    return {col["name"] for col in inspector.get_columns(table_name)}


async def get_existing_columns(
    engine: AsyncEngine, file_model: type[FileRecordBase] = FileRecord
) -> set[str] | None:
    """Column names of the record table, or None if it does not exist."""
    name = _table(file_model).name
    async with engine.connect() as conn:
        return await conn.run_sync(lambda c: _existing_columns(c, name))


async def get_schema_generation(
    engine: AsyncEngine, file_model: type[FileRecordBase] = FileRecord
) -> int:
    """0 when the table is absent, else 1 or 2."""
    columns = await get_existing_columns(engine, file_model)
    if columns is None:
        return 0
    return 2 if set(GENERATION_2_COLUMNS) <= columns else 1


async def create_schema(engine: AsyncEngine, file_model: type[FileRecordBase] = FileRecord) -> None:
    """Create the record table with all columns and indexes if absent."""
    table = _table(file_model)
    async with engine.begin() as conn:
        await conn.run_sync(lambda c: table.create(c, checkfirst=True))


def _add_columns(conn: Connection, table: Table) -> list[str]:
    existing = _existing_columns(conn, table.name) or set()
    preparer = conn.dialect.identifier_preparer
    added: list[str] = []
    for name in GENERATION_2_COLUMNS:
        if name in existing:
            continue
        column = table.c[name]
        col_type = column.type.compile(dialect=conn.dialect)
        conn.execute(
            text(
                f"ALTER TABLE {preparer.format_table(table)} "
                f"ADD COLUMN {preparer.quote(name)} {col_type}"
            )
        )
        added.append(name)
    for index in table.indexes:
        index.create(conn, checkfirst=True)
    return added


async def migrate_to_v2(
    engine: AsyncEngine, file_model: type[FileRecordBase] = FileRecord
) -> MigrationResult:
    """Bring a generation-1 table up to generation 2.

    Creates the table outright when it does not exist. Safe to run on every
    start-up.
    """
    table = _table(file_model)
    result = MigrationResult()

    if await get_existing_columns(engine, file_model) is None:
        await create_schema(engine, file_model)
        result.created_table = True
        logger.info("Created metadata table %s", table.name)
        return result

    async with engine.begin() as conn:
        result.added_columns = await conn.run_sync(lambda c: _add_columns(c, table))

        stmt = (
            update(table)
            .where(
                or_(
                    table.c.file_refs.is_(None),
                    table.c.ref_count.is_(None),
                    table.c.status.is_(None),
                )
            )
            .values(
                file_refs=func.coalesce(table.c.file_refs, "[]"),
                ref_count=func.coalesce(table.c.ref_count, 0),
                status=func.coalesce(table.c.status, FileStatus.ACTIVE.value),
            )
        )
        backfill = await conn.execute(stmt)
        result.backfilled_rows = backfill.rowcount or 0

    if result.added_columns or result.backfilled_rows:
        logger.info(
            "Migrated %s to generation 2: added %d columns, backfilled %d rows",
            table.name,
            len(result.added_columns),
            result.backfilled_rows,
        )
    return result
