from __future__ import annotations

import asyncio
from typing import Any, Dict, Mapping

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from ...errors import OrderNotFound, TransientStoreError, VersionConflict
from ...helpers import now_ts
from ...infra.sql import Gated
from ..order import Base, OrderSnapshot
from ._base import OrderStore as _OrderStore, check_fields


SQL_SELECT_ORDER = """
    SELECT id, order_number, status, payment_status, version, updated_at,
           created_at, program_title, program_slug, email, total_amount,
           currency
    FROM orders WHERE id = :id
"""

SQL_INSERT_ORDER = """
    INSERT INTO orders(
      id, order_number, status, payment_status, version, updated_at,
      created_at, program_title, program_slug, email, total_amount, currency
    ) VALUES (
      :id, :order_number, :status, :payment_status, :version, :updated_at,
      :created_at, :program_title, :program_slug, :email, :total_amount,
      :currency
    )
"""


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, (asyncio.TimeoutError, ConnectionError))


def _update_stmt(fields: Mapping[str, Any]):
    # column names come from WRITABLE_FIELDS only (see check_fields)
    sets = ", ".join(f"{name} = :{name}" for name in sorted(fields))
    return text(f"""
        UPDATE orders
        SET {sets}, version = version + 1, updated_at = :updated_at
        WHERE id = :id AND version = :expected
    """)


class OrderStore(_OrderStore):
    def __init__(self, *, engine: AsyncEngine, gated: Gated) -> None:
        self.engine = engine
        self.gated = gated

    async def read_order(self, order_id: str) -> OrderSnapshot:
        try:
            async with self.gated():
                async with self.engine.connect() as conn:
                    row = (await conn.execute(
                        text(SQL_SELECT_ORDER), {"id": order_id}
                    )).mappings().first()
        except Exception as e:
            if _is_transient(e):
                raise TransientStoreError(str(e)) from e
            raise
        if row is None:
            raise OrderNotFound(order_id)
        return OrderSnapshot.from_row(dict(row))

    async def conditional_update(
        self, order_id: str, fields: Mapping[str, Any],
        expected_version: int,
    ) -> OrderSnapshot:
        check_fields(fields)
        params: Dict[str, Any] = dict(fields)
        params.update(
            id=order_id, expected=expected_version, updated_at=now_ts()
        )
        try:
            async with self.gated():
                async with self.engine.begin() as conn:
                    res = await conn.execute(_update_stmt(fields), params)
                    row = (await conn.execute(
                        text(SQL_SELECT_ORDER), {"id": order_id}
                    )).mappings().first()
        except Exception as e:
            if _is_transient(e):
                raise TransientStoreError(str(e)) from e
            raise
        if row is None:
            raise OrderNotFound(order_id)
        if res.rowcount == 0:
            # zero rows matched: somebody else wrote first
            raise VersionConflict(order_id, expected_version)
        return OrderSnapshot.from_row(dict(row))

    async def seed_order(self, snapshot: OrderSnapshot) -> None:
        async with self.gated():
            async with self.engine.begin() as conn:
                await conn.execute(text(SQL_INSERT_ORDER), snapshot.to_row())

    async def close(self) -> None:
        await self.engine.dispose()
