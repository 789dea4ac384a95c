"""Async engine and session factory setup for the metadata store."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


def sqlite_url(db_path: str | Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def open_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine. File-backed SQLite gets WAL journaling."""
    engine = create_async_engine(url, echo=echo)

    if engine.dialect.name == "sqlite" and engine.url.database not in (None, "", ":memory:"):

        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: object, connection_record: object) -> None:
            cursor = dbapi_connection.cursor()  # type: ignore[union-attr]
            cursor.execute("PRAGMA journal_mode=WAL")
            result = cursor.fetchone()
            if result[0].lower() != "wal":
                logger.warning("WAL mode not active, got: %s", result[0])
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
