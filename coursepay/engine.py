from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .cancellation import CancelToken
from .errors import ConflictLimitReached, MissingOrderId, OrderNotFound
from .errors import VersionConflict
from .helpers import clean_order_id
from .infra.timings import timeit
from .logs import log_event
from .model.order import OUTCOMES, PAYMENT_MIRROR, OrderSnapshot
from .model.orderstore import OrderStore
from .retry import RetryPolicy, RetryStats, Sleep, with_retry

logger = logging.getLogger("coursepay.engine")


@dataclass(frozen=True)
class ConfirmResult:
    snapshot: OrderSnapshot
    desired: str
    # True when no write was needed because the order was already terminal
    replayed: bool
    # True when the order was terminal with the other outcome (kept as is)
    overridden: bool
    writes: int
    # highest attempt number any single store call needed
    attempts: int
    conflicts: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.snapshot.to_dict(),
            "desired": self.desired,
            "replayed": self.replayed,
            "overridden": self.overridden,
            "writes": self.writes,
            "attempts": self.attempts,
            "conflicts": self.conflicts,
        }


class TransitionEngine:
    """
    Drives one order from pending to a terminal outcome, exactly once.

    The only write is a conditional update guarded by the version read just
    before it. Losing that race is normal: the engine re-reads and decides
    again from the fresh snapshot. Terminal orders are never rewritten, and
    a completed order is never marked failed.
    """

    def __init__(
        self,
        store: OrderStore,
        policy: RetryPolicy,
        *,
        max_conflict_rounds: int = 5,
        sleep: Optional[Sleep] = None,
    ) -> None:
        self.store = store
        self.policy = policy
        self.max_conflict_rounds = max(1, max_conflict_rounds)
        self._sleep = sleep

    async def _read(self, order_id: str, token, stats) -> OrderSnapshot:
        async def op():
            async with timeit("orderstore.read"):
                return await self.store.read_order(order_id)
        return await with_retry(
            op, self.policy, token=token, stats=stats, sleep=self._sleep,
            label="read_order",
        )

    async def _write(self, snap: OrderSnapshot, desired: str,
                     token, stats) -> OrderSnapshot:
        fields = {"status": desired, "payment_status": PAYMENT_MIRROR[desired]}

        async def op():
            async with timeit("orderstore.update"):
                return await self.store.conditional_update(
                    snap.id, fields, snap.version_token
                )
        return await with_retry(
            op, self.policy, token=token, stats=stats, sleep=self._sleep,
            label="conditional_update",
        )

    async def confirm(
        self,
        order_id: Optional[str],
        desired: str,
        *,
        token: Optional[CancelToken] = None,
    ) -> ConfirmResult:
        if desired not in OUTCOMES:
            raise ValueError(f"desired outcome must be one of {sorted(OUTCOMES)}")
        order_id = clean_order_id(order_id)
        if order_id is None:
            raise MissingOrderId()

        stats = RetryStats()
        conflicts = 0
        try:
            snap = await self._read(order_id, token, stats)
        except OrderNotFound:
            log_event(logger, level="warning", event="order_not_found",
                      message="order not found", order_id=order_id)
            raise

        while True:
            if snap.is_terminal:
                overridden = snap.outcome != desired
                log_event(
                    logger,
                    level="info",
                    event="order_replayed",
                    message=(
                        f"order already {snap.outcome}, not writing"
                    ),
                    order_id=order_id,
                    desired=desired,
                    status=snap.outcome,
                    overridden=overridden,
                )
                return ConfirmResult(
                    snapshot=snap,
                    desired=desired,
                    replayed=True,
                    overridden=overridden,
                    writes=0,
                    attempts=stats.max_attempts_used,
                    conflicts=conflicts,
                )

            try:
                updated = await self._write(snap, desired, token, stats)
            except VersionConflict as e:
                conflicts += 1
                log_event(
                    logger,
                    level="info",
                    event="order_conflict",
                    message="order changed under us, re-reading",
                    order_id=order_id,
                    expected_version=snap.version_token,
                    round=conflicts,
                )
                # the row that beat us is usually terminal already
                snap = await self._read(order_id, token, stats)
                if (not snap.is_terminal
                        and conflicts >= self.max_conflict_rounds):
                    raise ConflictLimitReached(e, conflicts) from e
                continue

            log_event(
                logger,
                level="info",
                event="order_transitioned",
                message=f"order moved to {desired}",
                order_id=order_id,
                desired=desired,
                version=updated.version_token,
            )
            return ConfirmResult(
                snapshot=updated,
                desired=desired,
                replayed=False,
                overridden=False,
                writes=1,
                attempts=stats.max_attempts_used,
                conflicts=conflicts,
            )
