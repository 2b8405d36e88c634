import os
from typing import Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncEngine

from ...infra.sql import Gated
from ._base import OrderStore
from ._memory import OrderStore as MemoryOrderStore
from ._postgres import OrderStore as SqlOrderStore, create_schema
from ._redis import OrderStore as RedisOrderStore

BACKEND = os.getenv("ORDERSTORE_BACKEND", "pg").lower()  # 'pg' | 'redis' | 'memory'


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, backend: Optional[str] = None,
              engine: Optional[AsyncEngine] = None,
              gated: Optional[Gated] = None,
              r: Optional[redis.Redis] = None,
              latency: float = 0.0) -> OrderStore:
    backend = (backend or BACKEND).lower()
    if backend == "pg":
        if engine is None:
            raise RuntimeError("OrderStore(pg) requires engine=AsyncEngine")
        if gated is None:
            raise RuntimeError("OrderStore(pg) requires gated=Gated")
        return SqlOrderStore(engine=engine, gated=gated)
    if backend == "redis":
        if r is None:
            raise RuntimeError("OrderStore(redis) requires r=redis.Redis")
        return RedisOrderStore(r=r)
    if backend == "memory":
        return MemoryOrderStore(latency=latency)
    raise RuntimeError(f"unknown order store backend {backend!r}")


__all__ = [
    "OrderStore", "MemoryOrderStore", "SqlOrderStore", "RedisOrderStore",
    "create_schema", "new_store", "BACKEND",
]
