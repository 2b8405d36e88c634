from __future__ import annotations

import enum
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from .cancellation import CancelToken
from .engine import ConfirmResult, TransitionEngine
from .errors import (
    Aborted, ConfirmError, IllegalTransition, MissingOrderId,
    RetriesExhausted,
)
from .helpers import clean_order_id, now_ts
from .logs import log_event
from .model.order import STATUS_COMPLETED
from .retry import RetryPolicy

logger = logging.getLogger("coursepay.orchestrator")


class State(str, enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    RETRYING = "retrying"
    SUCCESS = "success"
    ERROR = "error"


# (state, event) -> next state; nothing else is legal
TRANSITIONS = {
    (State.IDLE, "start"): State.LOADING,
    (State.IDLE, "fail"): State.ERROR,
    (State.LOADING, "succeed"): State.SUCCESS,
    (State.LOADING, "fail"): State.ERROR,
    (State.ERROR, "retry"): State.RETRYING,
    (State.RETRYING, "succeed"): State.SUCCESS,
    (State.RETRYING, "fail"): State.ERROR,
}

IN_FLIGHT = frozenset({State.LOADING, State.RETRYING})

MSG_LOADING = {
    STATUS_COMPLETED: "Processing your payment. Please do not close this page.",
    "failed": "Processing. Please do not close this page.",
}
MSG_MAX_RETRIES = (
    "Maximum number of attempts reached. Please try again later or "
    "contact support."
)


def _success_message(result: ConfirmResult) -> str:
    desired = result.desired
    outcome = result.snapshot.outcome
    if result.overridden:
        if outcome == STATUS_COMPLETED:
            return "This order has already been paid; it was not marked as failed."
        return "This order was already marked as failed."
    if outcome == STATUS_COMPLETED:
        if result.replayed:
            return "This payment has already been processed."
        return "Payment completed successfully!"
    if desired == outcome:
        return "The payment could not be completed."
    return "Payment status updated."


@dataclass(frozen=True)
class ConfirmationView:
    state: str
    order_id: Optional[str]
    desired: str
    order: Optional[Dict[str, Any]]
    replayed: bool
    overridden: bool
    notice: Optional[str]
    error_code: Optional[str]
    message: str
    fatal: bool
    auto_exhausted: bool
    auto_attempts: int
    attempts_used: int
    attempts_max: int
    can_retry: bool
    max_retries_reached: bool
    retry_label: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ConfirmationOrchestrator:
    """
    One confirmation page: runs the engine once on start, then offers
    manual retries on transient failure.

    The state value is the in-flight guard: start() and retry() do nothing
    while a run is in progress. Manual retries are counted separately from
    the engine's automatic attempts and capped at the same budget.
    dispose() cancels whatever is in flight; nothing is applied afterwards.
    """

    def __init__(
        self,
        engine: TransitionEngine,
        order_id: Optional[str],
        desired: str,
        *,
        policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.engine = engine
        self.order_id = clean_order_id(order_id)
        self.desired = desired
        self.policy = policy or engine.policy
        self.state = State.IDLE
        self.result: Optional[ConfirmResult] = None
        self.error: Optional[ConfirmError] = None
        self.notice: Optional[str] = None
        self.manual_retries = 0
        self.auto_attempts = 0
        self.auto_exhausted = False
        self.disposed = False
        self.created_at = now_ts()
        self._token: Optional[CancelToken] = None

    # ---- state machine
    def _apply(self, event: str) -> None:
        nxt = TRANSITIONS.get((self.state, event))
        if nxt is None:
            raise IllegalTransition(f"{event!r} not allowed in {self.state.value}")
        self.state = nxt

    @property
    def in_flight(self) -> bool:
        return self.state in IN_FLIGHT

    @property
    def fatal(self) -> bool:
        return self.error is not None and self.error.fatal

    @property
    def can_retry(self) -> bool:
        return (
            self.state == State.ERROR
            and not self.fatal
            and not self.disposed
            and self.manual_retries < self.policy.max_attempts
        )

    @property
    def max_retries_reached(self) -> bool:
        return (
            self.state == State.ERROR
            and not self.fatal
            and self.manual_retries >= self.policy.max_attempts
        )

    # ---- actions
    async def start(self) -> ConfirmationView:
        if self.disposed or self.state != State.IDLE:
            return self.view
        if self.order_id is None:
            self.error = MissingOrderId()
            self._apply("fail")
            log_event(logger, level="warning", event="confirm_missing_id",
                      message="confirmation reached without an order id",
                      desired=self.desired)
            return self.view
        self._apply("start")
        await self._run(manual=False)
        return self.view

    async def retry(self) -> ConfirmationView:
        if self.disposed or self.in_flight:
            return self.view
        if not self.can_retry:
            return self.view
        self.manual_retries += 1
        self.error = None
        self._apply("retry")
        log_event(logger, level="info", event="confirm_manual_retry",
                  message="manual retry",
                  order_id=self.order_id,
                  attempt=self.manual_retries,
                  max_attempts=self.policy.max_attempts)
        await self._run(manual=True)
        return self.view

    def dispose(self) -> None:
        if self.disposed:
            return
        self.disposed = True
        if self._token is not None:
            self._token.cancel("disposed")

    async def _run(self, *, manual: bool) -> None:
        token = self._token = CancelToken()
        try:
            result = await self.engine.confirm(
                self.order_id, self.desired, token=token
            )
        except Aborted:
            log_event(logger, level="debug", event="confirm_aborted",
                      message="confirmation aborted, view gone",
                      order_id=self.order_id)
            return
        except ConfirmError as e:
            if not self.disposed:
                self._fail(e)
            return
        except Exception as e:
            log_event(logger, level="exception", event="confirm_crashed",
                      message="unexpected error during confirmation",
                      order_id=self.order_id, error=str(e))
            if not self.disposed:
                self._fail(ConfirmError(str(e)))
            return
        finally:
            self._token = None

        if self.disposed:
            return
        self.result = result
        self.auto_attempts = result.attempts
        self.auto_exhausted = False
        if manual:
            self.notice = (
                "The order was already processed." if result.replayed
                else f"Succeeded on attempt {self.manual_retries} of "
                     f"{self.policy.max_attempts}."
            )
        self._apply("succeed")

    def _fail(self, e: ConfirmError) -> None:
        self.error = e
        if isinstance(e, RetriesExhausted):
            self.auto_exhausted = True
            self.auto_attempts = e.attempts
        self._apply("fail")

    # ---- rendering
    def _message(self) -> str:
        if self.state in IN_FLIGHT or self.state == State.IDLE:
            return MSG_LOADING.get(self.desired, MSG_LOADING["failed"])
        if self.state == State.SUCCESS and self.result is not None:
            return _success_message(self.result)
        if self.error is not None:
            if self.max_retries_reached:
                return f"{self.error.message} {MSG_MAX_RETRIES}"
            return self.error.message
        return ""

    @property
    def view(self) -> ConfirmationView:
        res = self.result if self.state == State.SUCCESS else None
        return ConfirmationView(
            state=self.state.value,
            order_id=self.order_id,
            desired=self.desired,
            order=res.snapshot.to_dict() if res else None,
            replayed=bool(res and res.replayed),
            overridden=bool(res and res.overridden),
            notice=self.notice if res else None,
            error_code=self.error.code if self.error else None,
            message=self._message(),
            fatal=self.fatal,
            auto_exhausted=self.auto_exhausted,
            auto_attempts=self.auto_attempts,
            attempts_used=self.manual_retries,
            attempts_max=self.policy.max_attempts,
            can_retry=self.can_retry,
            max_retries_reached=self.max_retries_reached,
            retry_label=(
                f"Retry ({self.manual_retries + 1}/{self.policy.max_attempts})"
            ),
        )
