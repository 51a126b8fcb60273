from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from config.settings import settings


class Base(DeclarativeBase):
    """Shared declarative base for all ORM models across modules."""

    pass


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _enable_sqlite_writer_exclusivity(engine: AsyncEngine) -> None:
    """Make every SQLite transaction start with BEGIN IMMEDIATE.

    SQLite has no SELECT ... FOR UPDATE. Taking the RESERVED lock at BEGIN
    serializes concurrent units of work the same way row locks do on PostgreSQL,
    and it also keeps SAVEPOINT working under the aiosqlite driver.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        # Stop the driver from emitting its own deferred BEGIN
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for(url: str, echo: bool = False) -> AsyncEngine:
    """Build an AsyncEngine for PostgreSQL (asyncpg) or SQLite (aiosqlite)."""
    if _is_sqlite(url):
        sqlite_engine = create_async_engine(
            url,
            echo=echo,
            connect_args={"timeout": 30},
        )
        _enable_sqlite_writer_exclusivity(sqlite_engine)
        return sqlite_engine
    return create_async_engine(
        url,
        echo=echo,
        pool_size=20,
        max_overflow=10,
    )


engine: AsyncEngine = create_engine_for(settings.DATABASE_URL, echo=settings.DEBUG)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@asynccontextmanager
async def unit_of_work(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Run a block atomically on the caller's session.

    If the session already has a transaction in progress the block joins it as a
    SAVEPOINT: a failure rolls back only the block, and the caller commits.
    Otherwise the block owns a fresh transaction that commits on exit.
    """
    if db.in_transaction():
        async with db.begin_nested():
            yield db
    else:
        async with db.begin():
            yield db


async def get_db_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: yields an AsyncSession, auto-closes after request."""
    async with async_session_factory() as session:
        yield session
