"""Async engine and session factory for SQLite (dev, tests) and Postgres."""

from __future__ import annotations
from typing import Any, Dict, Tuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

# foreign keys on: order items and commissions cascade with their parents
SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
)


def async_url(url: str) -> str:
    for prefix, driver in ASYNC_DRIVERS:
        if url.startswith(prefix):
            return driver + url[len(prefix):]
    return url


def engine_options(db_url: str, *, pool_size: int = 10,
                   max_overflow: int = 10,
                   pool_timeout: int = 30) -> Dict[str, Any]:
    kw: Dict[str, Any] = dict(pool_pre_ping=True)
    # sqlite keeps the dialect's default pool
    if db_url.startswith("postgresql+asyncpg://"):
        kw.update(pool_size=pool_size, max_overflow=max_overflow,
                  pool_timeout=pool_timeout)
    return kw


def make_async_engine(
    database_url: str, *, pool_size: int = 10, max_overflow: int = 10,
    pool_timeout: int = 30,
) -> Tuple[AsyncEngine, async_sessionmaker]:
    db_url = async_url(database_url)
    engine = create_async_engine(
        db_url,
        **engine_options(db_url, pool_size=pool_size,
                         max_overflow=max_overflow, pool_timeout=pool_timeout),
    )

    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            for pragma in SQLITE_PRAGMAS:
                cur.execute(pragma)
            cur.close()

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return engine, SessionAsync
