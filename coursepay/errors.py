"""
Error taxonomy for the confirmation flow.

Every failure the store or the flow can produce is one of four kinds:

  fatal      MissingOrderId, OrderNotFound      reported at once, never retried
  transient  TransientStoreError                retried with backoff
  conflict   VersionConflict                    resolved by re-reading
  aborted    Aborted                            dropped silently

RetriesExhausted wraps the last transient error once the automatic budget is
spent; it is what the orchestrator offers a manual retry for.
"""
from __future__ import annotations

from typing import Optional


class ConfirmError(Exception):
    code = "confirm_error"
    fatal = False
    message = "Something went wrong while confirming the order."

    def __init__(self, detail: Optional[str] = None) -> None:
        super().__init__(detail or self.message)
        self.detail = detail or self.message


class MissingOrderId(ConfirmError):
    code = "missing_order_id"
    fatal = True
    message = "No order number was supplied."


class OrderNotFound(ConfirmError):
    code = "not_found"
    fatal = True
    message = "The order could not be found."

    def __init__(self, order_id: str) -> None:
        super().__init__(f"order {order_id!r} not found")
        self.order_id = order_id


class TransientStoreError(ConfirmError):
    code = "transient"
    message = "The order service is temporarily unavailable."


class VersionConflict(ConfirmError):
    code = "conflict"
    message = "The order was changed by another request."

    def __init__(self, order_id: str, expected_version: int) -> None:
        super().__init__(
            f"order {order_id!r} no longer at version {expected_version}"
        )
        self.order_id = order_id
        self.expected_version = expected_version


class Aborted(ConfirmError):
    code = "aborted"
    message = "The confirmation was abandoned."


class RetriesExhausted(ConfirmError):
    code = "retries_exhausted"
    message = "The order status could not be updated. Please try again."

    def __init__(self, last_error: Optional[BaseException],
                 attempts: int) -> None:
        super().__init__(
            f"gave up after {attempts} attempt(s): {last_error}"
        )
        self.last_error = last_error
        self.attempts = attempts


class ConflictLimitReached(RetriesExhausted):
    code = "conflict_limit"

    def __init__(self, last_conflict: VersionConflict, rounds: int) -> None:
        super().__init__(last_conflict, rounds)
        self.order_id = last_conflict.order_id
        self.rounds = rounds


class IllegalTransition(RuntimeError):
    pass
