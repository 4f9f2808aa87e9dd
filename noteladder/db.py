# noteladder/db.py
from __future__ import annotations
from pathlib import Path

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy import event, inspect

from noteladder.models import Base
from noteladder.log import logger


async def ensure_schema(engine: AsyncEngine) -> None:
    """
    Create missing tables.
    Idempotent: existing tables are left untouched.
    """
    async with engine.begin() as conn:
        def _get_tables(sync_conn):
            insp = inspect(sync_conn)
            return insp.get_table_names()

        existing = set(await conn.run_sync(_get_tables))
        missing = [t for t in Base.metadata.tables if t not in existing]
        if missing:
            logger.info(f"[db] creating tables: {', '.join(sorted(missing))}")
            await conn.run_sync(Base.metadata.create_all)


def _sqlite_pragmas(dbapi_conn, _record) -> None:
    # The driver would defer BEGIN until the first write; _begin_immediate emits it instead
    dbapi_conn.isolation_level = None
    # WAL lets readers work from a consistent snapshot while a review write is in flight
    cur = dbapi_conn.cursor()
    cur.execute("PRAGMA journal_mode=WAL")
    cur.execute("PRAGMA foreign_keys=ON")
    cur.close()


def _begin_immediate(conn) -> None:
    # Take the write lock up front so a read-modify-write of session counters
    # cannot interleave with another connection or process
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(db_path: Path) -> tuple[AsyncEngine, async_sessionmaker]:
    """
    Build the async engine + session factory for the SQLite DB at db_path.
    """
    url = f"sqlite+aiosqlite:///{db_path}"
    eng = create_async_engine(url, future=True)
    event.listen(eng.sync_engine, "connect", _sqlite_pragmas)
    event.listen(eng.sync_engine, "begin", _begin_immediate)
    session_factory = async_sessionmaker(eng, expire_on_commit=False)
    return eng, session_factory
