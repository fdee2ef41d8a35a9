"""SQLite persistence for cached credentials and the credit ledger.

The file is ``resale.db`` under the data directory: ``~/.resale-intelligence``
unless ``DATA_DIR`` or the ``data_dir`` setting names another. Every SQLite
connection runs in WAL mode with a busy timeout, so a tool call reading the
balance does not fail while another call is debiting it.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Union

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .sqlmodels import Base

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = "~/.resale-intelligence"
DB_FILENAME = "resale.db"

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


def get_data_dir(data_dir: Optional[str] = None) -> Path:
    path = Path(data_dir or os.environ.get("DATA_DIR") or DEFAULT_DATA_DIR).expanduser()
    path.mkdir(parents=True, exist_ok=True)
    return path


def sqlite_url(path: Union[str, Path]) -> str:
    return f"sqlite+aiosqlite:///{Path(path)}"


def get_db_url(data_dir: Optional[str] = None) -> str:
    return sqlite_url(get_data_dir(data_dir) / DB_FILENAME)


def _apply_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    try:
        for pragma in SQLITE_PRAGMAS:
            cursor.execute(pragma)
    finally:
        cursor.close()


def open_engine(url: str) -> AsyncEngine:
    """Create an async engine; SQLite connections get ``SQLITE_PRAGMAS``."""
    engine = create_async_engine(url, echo=False)
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _apply_pragmas)
    return engine


def session_factory_for(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """Create the credential and ledger tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ─── Process-wide engine ─────────────────────────────────────────────────────

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine(url: Optional[str] = None) -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = open_engine(url or get_db_url())
    elif url is not None and url != str(_engine.url):
        logger.warning("Database already open at %s, ignoring %s", _engine.url, url)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = session_factory_for(get_engine())
    return _session_factory


async def init_db(url: Optional[str] = None) -> AsyncEngine:
    engine = get_engine(url)
    await create_schema(engine)
    logger.info("Credential and ledger tables ready in %s", engine.url.database)
    return engine


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
