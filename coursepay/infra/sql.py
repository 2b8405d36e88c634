import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncContextManager, Callable, Optional, Tuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from ..logs import log_event
from ..settings import to_int

logger = logging.getLogger("coursepay.sql")

# every statement against the order store runs inside one of these
Gated = Callable[[], AsyncContextManager[None]]

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)


@dataclass(frozen=True)
class PoolConfig:
    size: int = 10
    max_overflow: int = 10
    timeout_s: int = 30
    # concurrent statements; None means "as many as the pool holds"
    gate_limit: Optional[int] = None

    @classmethod
    def from_env(cls) -> "PoolConfig":
        gate = os.getenv("DB_GATE_LIMIT")
        return cls(
            size=to_int(os.getenv("DB_POOL_SIZE"), 10),
            max_overflow=to_int(os.getenv("DB_MAX_OVERFLOW"), 10),
            timeout_s=to_int(os.getenv("DB_POOL_TIMEOUT"), 30),
            gate_limit=to_int(gate, 10) if gate else None,
        )

    def gate_for(self, pooled: bool) -> int:
        if self.gate_limit is not None:
            return max(1, self.gate_limit)
        return max(1, self.size if pooled else 10)


def async_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def _gate(limit: int) -> Gated:
    sem = asyncio.Semaphore(limit)

    @asynccontextmanager
    async def gated():
        async with sem:
            yield

    return gated


def _sqlite_pragmas(dbapi_connection, _record) -> None:
    # concurrent tabs hit the same file; wait for the writer lock instead of
    # failing with "database is locked"
    cur = dbapi_connection.cursor()
    cur.execute("PRAGMA journal_mode=WAL;")
    cur.execute("PRAGMA busy_timeout=5000;")
    cur.execute("PRAGMA synchronous=NORMAL;")
    cur.close()


def make_async_engine(
    database_url: str, pool: Optional[PoolConfig] = None
) -> Tuple[AsyncEngine, Gated]:
    pool = pool or PoolConfig.from_env()
    url = async_url(database_url)
    pooled = url.startswith("postgresql+asyncpg://")

    kw = dict(pool_pre_ping=True)
    if pooled:
        kw.update(
            pool_size=pool.size,
            max_overflow=pool.max_overflow,
            pool_timeout=pool.timeout_s,
        )
    engine = create_async_engine(url, **kw)
    if url.startswith("sqlite+aiosqlite://"):
        event.listen(engine.sync_engine, "connect", _sqlite_pragmas)

    gate_limit = pool.gate_for(pooled)
    log_event(logger, level="info", event="db_engine_created",
              message=f"order store engine ready on {url} (gate {gate_limit})",
              gate_limit=gate_limit)
    return engine, _gate(gate_limit)
