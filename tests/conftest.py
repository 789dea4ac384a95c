"""Shared fixtures for ledgerfs tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel

from ledgerfs.fs.config import LocalConfig
from ledgerfs.fs.local_disk import LocalDiskBackend
from ledgerfs.models.files import DEFAULT_TABLE_NAME

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncEngine


@pytest.fixture
async def async_engine() -> AsyncIterator[AsyncEngine]:
    """Async in-memory SQLite engine with all tables created."""
    eng = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
async def empty_engine() -> AsyncIterator[AsyncEngine]:
    """Async in-memory SQLite engine with no tables."""
    eng = create_async_engine("sqlite+aiosqlite://", echo=False)
    yield eng
    await eng.dispose()


@pytest.fixture
async def disk(tmp_path) -> LocalDiskBackend:
    """Initialized LocalDiskBackend rooted at a temporary directory."""
    backend = LocalDiskBackend(LocalConfig(base_path=tmp_path / "root"))
    await backend.initialize()
    return backend


GEN1_DDL = f"""
CREATE TABLE {DEFAULT_TABLE_NAME} (
    id VARCHAR PRIMARY KEY,
    filename VARCHAR NOT NULL,
    file_type VARCHAR NOT NULL,
    file_data TEXT,
    created_at DATETIME NOT NULL,
    changed_at DATETIME NOT NULL,
    file_path VARCHAR NOT NULL,
    storage_type VARCHAR NOT NULL
)
"""


@pytest.fixture
def gen1_table() -> Callable[..., Awaitable[None]]:
    """Creates a generation-1 metadata table with *rows* local records."""

    async def _create(engine: AsyncEngine, rows: int = 0) -> None:
        async with engine.begin() as conn:
            await conn.execute(text(GEN1_DDL))
            for i in range(rows):
                await conn.execute(
                    text(
                        f"INSERT INTO {DEFAULT_TABLE_NAME} VALUES "
                        "(:id, :name, 'text/plain', '{}', '2024-01-01 00:00:00', "
                        "'2024-01-01 00:00:00', :path, 'local')"
                    ),
                    {"id": f"id{i}", "name": f"f{i}.txt", "path": f"/f{i}.txt"},
                )

    return _create
