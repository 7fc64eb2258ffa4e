# wakatv/infra/sql.py
import asyncio
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncContextManager, Callable, Tuple

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

Gated = Callable[[], AsyncContextManager[None]]

# plain driver-less URLs from the environment -> async drivers
_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)


def async_url(url: str) -> str:
    for prefix, driver in _ASYNC_DRIVERS:
        if url.startswith(prefix):
            return driver + url[len(prefix):]
    return url


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite+aiosqlite://")


def _make_sqlite_parent(url: str) -> None:
    path = make_url(url).database
    if path and path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    # WAL lets readers run next to the single writer; writers wait on
    # busy_timeout instead of failing with "database is locked"
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _record):
        cur = dbapi_connection.cursor()
        for pragma in ("journal_mode=WAL", "busy_timeout=5000",
                       "synchronous=NORMAL"):
            cur.execute(f"PRAGMA {pragma};")
        cur.close()


def _gate(limit: int) -> Gated:
    sem = asyncio.Semaphore(max(1, limit))

    @asynccontextmanager
    async def gated():
        async with sem:
            yield

    return gated


def make_async_engine(
    database_url: str,
) -> Tuple[AsyncEngine, async_sessionmaker, Gated]:
    """
    Engine, session factory and DB gate for `database_url`.

    Every store call runs inside `gated()`, which caps the number of
    concurrent transactions at DB_GATE_LIMIT (default: the postgres pool
    size, or 10 for sqlite).
    """
    url = async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    if _is_sqlite(url):
        _make_sqlite_parent(url)
        default_gate = 10
    else:
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )
        default_gate = pool_size

    engine = create_async_engine(url, **kw)
    if _is_sqlite(url):
        _install_sqlite_pragmas(engine)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    gated = _gate(int(os.getenv("DB_GATE_LIMIT", str(default_gate))))
    return engine, SessionAsync, gated


def supports_skip_locked(engine: AsyncEngine) -> bool:
    return engine.dialect.name == "postgresql"
