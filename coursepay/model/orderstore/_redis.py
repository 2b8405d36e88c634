from __future__ import annotations

from typing import Any, Dict, Mapping

import redis.asyncio as redis
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    TimeoutError as RedisTimeoutError,
    WatchError,
)

from ...errors import OrderNotFound, TransientStoreError, VersionConflict
from ...helpers import now_ts
from ..order import OrderSnapshot
from ._base import OrderStore as _OrderStore, check_fields


# ---- keys
def k_order(oid: str) -> str: return f"order:{oid}"


TRANSIENT = (RedisConnectionError, RedisTimeoutError)


class OrderStore(_OrderStore):
    def __init__(self, *, r: redis.Redis) -> None:
        self.r = r

    async def read_order(self, order_id: str) -> OrderSnapshot:
        try:
            h = await self.r.hgetall(k_order(order_id))
        except TRANSIENT as e:
            raise TransientStoreError(str(e)) from e
        if not h:
            raise OrderNotFound(order_id)
        return OrderSnapshot.from_row(h)

    async def conditional_update(
        self, order_id: str, fields: Mapping[str, Any],
        expected_version: int,
    ) -> OrderSnapshot:
        check_fields(fields)
        key = k_order(order_id)
        try:
            async with self.r.pipeline(transaction=True) as pipe:
                # WATCH + version check + MULTI/EXEC is the compare-and-swap
                await pipe.watch(key)
                current = await pipe.hget(key, "version")
                if current is None:
                    raise OrderNotFound(order_id)
                if int(current) != expected_version:
                    raise VersionConflict(order_id, expected_version)
                mapping: Dict[str, Any] = dict(fields)
                mapping["version"] = expected_version + 1
                mapping["updated_at"] = now_ts()
                pipe.multi()
                pipe.hset(key, mapping=mapping)
                pipe.hgetall(key)
                _, h = await pipe.execute()
        except WatchError as e:
            raise VersionConflict(order_id, expected_version) from e
        except TRANSIENT as e:
            raise TransientStoreError(str(e)) from e
        return OrderSnapshot.from_row(h)

    async def seed_order(self, snapshot: OrderSnapshot) -> None:
        await self.r.hset(k_order(snapshot.id), mapping=snapshot.to_row())

    async def close(self) -> None:
        await self.r.aclose()
