"""Async SQLAlchemy storage layer (SQLite by default)."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from ..config import AppSettings, get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base declarative model."""


def _enable_sqlite_pragmas(dbapi_connection: Any, _connection_record: Any) -> None:
    # The gateway writes while websocket subscribers read; WAL keeps readers unblocked.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


def database_url_for(settings: AppSettings) -> str:
    if settings.database_url:
        return settings.database_url
    return f"sqlite+aiosqlite:///{settings.database_path}"


class DatabaseManager:
    """Owns the async engine; hands out sessions that commit on success."""

    def __init__(self, url: str) -> None:
        self._url = url
        self._engine: AsyncEngine | None = None
        self._session_maker: async_sessionmaker[AsyncSession] | None = None

    @property
    def is_sqlite(self) -> bool:
        return self._url.startswith("sqlite")

    def _sqlite_path(self) -> Path | None:
        if not self.is_sqlite:
            return None
        _, _, raw_path = self._url.partition(":///")
        if not raw_path or raw_path == ":memory:":
            return None
        return Path(raw_path)

    async def initialize(self) -> None:
        if self._engine is None:
            db_path = self._sqlite_path()
            if db_path is not None:
                db_path.parent.mkdir(parents=True, exist_ok=True)
            self._engine = create_async_engine(self._url, future=True)
            if self.is_sqlite:
                event.listen(self._engine.sync_engine, "connect", _enable_sqlite_pragmas)
            self._session_maker = async_sessionmaker(self._engine, expire_on_commit=False)

        assert self._engine is not None
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Message store ready (%s)", self._url.split("://", 1)[0])

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_maker = None

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if self._session_maker is None:
            raise RuntimeError("DatabaseManager not initialized")
        session = self._session_maker()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


_db_manager: DatabaseManager | None = None


async def get_db_manager() -> DatabaseManager:
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager(database_url_for(get_settings()))
        await _db_manager.initialize()
    return _db_manager


async def shutdown_database() -> None:
    global _db_manager
    if _db_manager is not None:
        await _db_manager.dispose()
        _db_manager = None
