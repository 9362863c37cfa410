from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from sqlalchemy import MetaData, event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from .config import get_settings

logger = logging.getLogger(__name__)

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


# ---------- ORM Base for the local mirror ----------
# models.py does: from .database import Base
class Base(DeclarativeBase):
    """Base declarative class that centralises metadata."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


def _is_memory_url(url: str) -> bool:
    database = make_url(url).database
    return not database or database == ":memory:"


def _sqlite_file(url: str) -> Optional[Path]:
    if _is_memory_url(url):
        return None
    return Path(make_url(url).database)


def _on_connect(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.close()


class Database:
    """
    Owns the async engine and session factory for the local store.

    Every write goes through ``transaction()``, which holds a single
    process-wide lock so SQLite only ever sees one writer at a time.
    """

    def __init__(self, url: Optional[str] = None, *, echo: bool = False) -> None:
        self.url = url or get_settings().database_url
        engine_kwargs = {}
        if _is_memory_url(self.url):
            # one shared connection, otherwise every session gets an empty database
            engine_kwargs["poolclass"] = StaticPool
        self.engine = create_async_engine(
            self.url,
            future=True,
            echo=echo,
            connect_args={"check_same_thread": False},
            **engine_kwargs,
        )
        event.listen(self.engine.sync_engine, "connect", _on_connect)
        self.sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)
        self.write_lock = asyncio.Lock()

    def session(self) -> AsyncSession:
        """Return a read session. Use ``transaction()`` for writes."""
        return self.sessionmaker()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Yield a session inside one committed-or-rolled-back transaction."""
        async with self.write_lock:
            async with self.sessionmaker() as session:
                async with session.begin():
                    yield session

    async def init(self) -> None:
        """Create the local schema. Import inside to avoid circulars."""
        from . import models  # noqa: F401

        path = _sqlite_file(self.url)
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Local database ready at %s", path or ":memory:")

    async def dispose(self) -> None:
        await self.engine.dispose()
