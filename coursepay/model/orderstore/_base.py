from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Mapping

from ..order import OrderSnapshot, WRITABLE_FIELDS


def check_fields(fields: Mapping[str, Any]) -> None:
    extra = set(fields) - WRITABLE_FIELDS
    if extra:
        raise ValueError(f"fields not writable here: {sorted(extra)}")
    if not fields:
        raise ValueError("conditional update needs at least one field")


class OrderStore(ABC):
    # read_order raises OrderNotFound | TransientStoreError
    @abstractmethod
    async def read_order(self, order_id: str) -> OrderSnapshot: ...

    # raises VersionConflict when the row moved past expected_version,
    # OrderNotFound | TransientStoreError otherwise
    @abstractmethod
    async def conditional_update(
        self, order_id: str, fields: Mapping[str, Any],
        expected_version: int,
    ) -> OrderSnapshot: ...

    # fixtures / admin tooling; the confirmation flow never creates orders
    @abstractmethod
    async def seed_order(self, snapshot: OrderSnapshot) -> None: ...

    async def close(self) -> None:
        return None
