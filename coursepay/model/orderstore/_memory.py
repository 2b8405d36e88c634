from __future__ import annotations

import asyncio
from typing import Any, Dict, Mapping, Optional, Type

from ...errors import OrderNotFound, TransientStoreError, VersionConflict
from ...helpers import now_ts
from ..order import OrderSnapshot
from ._base import OrderStore as _OrderStore, check_fields


class OrderStore(_OrderStore):
    """
    Process-local order store.

    Stands in for the remote store in tests and in local demo mode. Every
    call awaits `latency` seconds first, so concurrent callers interleave
    the way they do against a real database. The compare and the set of a
    conditional update happen with no await in between, which makes them
    atomic on the event loop.

    Faults are scripted per operation ("read" | "update"):

        store.fail_next("read", 2)   # next two reads raise transient errors
    """

    def __init__(self, *, latency: float = 0.0) -> None:
        self.latency = latency
        self._orders: Dict[str, OrderSnapshot] = {}
        self._faults: Dict[str, list] = {"read": [], "update": []}
        # call counters, failed calls included
        self.reads = 0
        self.write_attempts = 0
        # successful conditional writes only
        self.writes = 0
        self.conflicts = 0

    def fail_next(
        self, op: str, n: int = 1,
        exc: Optional[Type[Exception]] = None,
    ) -> None:
        if op not in self._faults:
            raise ValueError(f"unknown operation {op!r}")
        self._faults[op].extend([exc or TransientStoreError] * n)

    def get(self, order_id: str) -> Optional[OrderSnapshot]:
        return self._orders.get(order_id)

    async def _pause(self, op: str) -> None:
        if self.latency > 0:
            await asyncio.sleep(self.latency)
        else:
            await asyncio.sleep(0)
        if self._faults[op]:
            exc = self._faults[op].pop(0)
            raise exc(f"injected {op} failure")

    async def read_order(self, order_id: str) -> OrderSnapshot:
        self.reads += 1
        await self._pause("read")
        snap = self._orders.get(order_id)
        if snap is None:
            raise OrderNotFound(order_id)
        return snap

    async def conditional_update(
        self, order_id: str, fields: Mapping[str, Any],
        expected_version: int,
    ) -> OrderSnapshot:
        check_fields(fields)
        self.write_attempts += 1
        await self._pause("update")
        current = self._orders.get(order_id)
        if current is None:
            raise OrderNotFound(order_id)
        if current.version_token != expected_version:
            self.conflicts += 1
            raise VersionConflict(order_id, expected_version)
        updated = current.with_fields(fields, updated_at=now_ts())
        self._orders[order_id] = updated
        self.writes += 1
        return updated

    async def seed_order(self, snapshot: OrderSnapshot) -> None:
        self._orders[snapshot.id] = snapshot

    def touch(self, order_id: str) -> OrderSnapshot:
        """Bump the version without changing status (an admin edit)."""
        current = self._orders[order_id]
        updated = current.with_fields({}, updated_at=now_ts())
        self._orders[order_id] = updated
        return updated
