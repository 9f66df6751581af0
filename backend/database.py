"""Database engine and session management."""

from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from backend.config import settings


def _ensure_sqlite_dir(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database and parsed.database != ":memory:":
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)


def enable_foreign_keys(async_engine: AsyncEngine) -> AsyncEngine:
    """Turn on SQLite foreign key enforcement for every new connection."""
    if async_engine.dialect.name != "sqlite":
        return async_engine

    @event.listens_for(async_engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return async_engine


_ensure_sqlite_dir(settings.database_url)
engine = enable_foreign_keys(create_async_engine(settings.database_url, echo=settings.debug))
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
