"""Storage bootstrap for the OAuth2 credential store.

One async engine per process. SQLite (the default, and what the tests use)
gets its data directory created on import and foreign keys switched on so
that codes, consents and tokens cascade with their client.
"""

from pathlib import Path

from fastapi import Request
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from authserver.config import settings

_url = make_url(settings.database_url)
_is_sqlite = _url.get_backend_name() == "sqlite"


def _ensure_sqlite_directory(database: str | None) -> None:
    if database and database != ":memory:":
        Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)


if _is_sqlite:
    _ensure_sqlite_directory(_url.database)
    engine = create_async_engine(settings.database_url, echo=False)
else:
    engine = create_async_engine(
        settings.database_url,
        echo=False,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
    )

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


if _is_sqlite:
    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()


class Base(DeclarativeBase):
    pass


async def get_db(request: Request) -> AsyncSession:
    """FastAPI dependency yielding a session from the app's ``session_factory``.

    The bearer gate draws from the same factory, so swapping it on
    ``app.state`` redirects every store access of the app.
    """
    async with request.app.state.session_factory() as session:
        yield session


async def init_db():
    """Create the OAuth2 tables if they do not exist yet."""
    import authserver.oauth2.models  # noqa: F401 registers the tables on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def dispose_engine():
    """Release pooled connections on shutdown."""
    await engine.dispose()
