import os
import asyncio
from dataclasses import dataclass
from contextlib import asynccontextmanager
from typing import AsyncIterator, AsyncContextManager

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
)


def _normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


# DB-GATE
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


@dataclass
class Database:
    """Engine, session factory and the two concurrency boundaries.

    gated()     -- bounds concurrent sessions to the connection pool size
    exclusive() -- serializes every transition that touches stock or bib
                   numbers inside this process
    """
    engine: AsyncEngine
    sessions: async_sessionmaker
    gate: asyncio.Semaphore
    lock: asyncio.Lock

    def gated(self) -> AsyncContextManager[None]:
        return _gated(self.gate)

    def exclusive(self) -> AsyncContextManager[None]:
        return self.lock

    @asynccontextmanager
    async def session(self) -> AsyncIterator["GatedAsyncSession"]:
        async with self.sessions() as session:
            yield GatedAsyncSession(session=session, db=self)

    async def dispose(self) -> None:
        await self.engine.dispose()


@dataclass
class GatedAsyncSession:
    session: AsyncSession
    db: Database

    def gated(self) -> AsyncContextManager[None]:
        return self.db.gated()

    def exclusive(self) -> AsyncContextManager[None]:
        return self.db.exclusive()


def make_async_engine(database_url: str) -> Database:
    db_url = _normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    pool_size = None
    if db_url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )

    engine = create_async_engine(db_url, **kw)

    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            # we emit BEGIN ourselves, see _sqlite_begin
            dbapi_connection.isolation_level = None
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA busy_timeout=5000;")
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.execute("PRAGMA foreign_keys=ON;")
            cur.close()

        @event.listens_for(engine.sync_engine, "begin")
        def _sqlite_begin(conn):
            # take the write lock up front: SQLite is single-writer and a
            # deferred transaction cannot safely upgrade after reading
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    sessions = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # Create a per-engine gate. Default to pool_size
    if pool_size is None:
        # sqlite
        gate_limit = int(os.getenv("DB_GATE_LIMIT", "10"))
    else:
        # postgres
        gate_limit = int(os.getenv("DB_GATE_LIMIT", pool_size))

    return Database(
        engine=engine,
        sessions=sessions,
        gate=asyncio.Semaphore(max(1, gate_limit)),
        lock=asyncio.Lock(),
    )
