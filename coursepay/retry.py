from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

from .cancellation import CancelToken, guarded, pause
from .errors import RetriesExhausted, TransientStoreError
from .logs import log_event
from .settings import Settings

T = TypeVar("T")

logger = logging.getLogger("coursepay.retry")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0   # seconds
    max_delay: float = 5.0    # seconds

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay_for(self, attempt: int) -> float:
        # attempt is 0-based: the wait after the first failure is base_delay
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.confirm_max_attempts,
            base_delay=settings.confirm_base_delay_s,
            max_delay=settings.confirm_max_delay_s,
        )

    @classmethod
    def from_env(cls) -> "RetryPolicy":
        return cls.from_settings(Settings.from_env())


@dataclass
class RetryStats:
    # (label, attempts used) per wrapped call, in call order
    calls: List[Tuple[str, int]] = field(default_factory=list)

    def record(self, label: str, attempts: int) -> None:
        self.calls.append((label, attempts))

    @property
    def total_attempts(self) -> int:
        return sum(n for _, n in self.calls)

    @property
    def max_attempts_used(self) -> int:
        return max((n for _, n in self.calls), default=0)


async def with_retry(
    op: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    token: Optional[CancelToken] = None,
    stats: Optional[RetryStats] = None,
    sleep: Optional[Sleep] = None,
    label: str = "op",
) -> T:
    """
    Run `op` until it succeeds, retrying TransientStoreError only.

    Anything else (not found, conflicts, aborts) propagates on the spot and
    consumes no further budget. After `policy.max_attempts` transient
    failures the last one is raised wrapped in RetriesExhausted.
    """
    last: Optional[TransientStoreError] = None
    for attempt in range(policy.max_attempts):
        if token is not None:
            token.raise_if_cancelled()
        try:
            result = await guarded(token, op())
        except TransientStoreError as e:
            last = e
            if attempt + 1 >= policy.max_attempts:
                break
            delay = policy.delay_for(attempt)
            log_event(
                logger,
                level="warning",
                event="confirm_retry",
                message=f"{label} failed, retrying in {delay:.2f}s",
                label=label,
                attempt=attempt + 1,
                max_attempts=policy.max_attempts,
                delay_s=delay,
                error=str(e),
            )
            if sleep is not None:
                if token is not None:
                    token.raise_if_cancelled()
                await sleep(delay)
            else:
                await pause(token, delay)
            continue
        if stats is not None:
            stats.record(label, attempt + 1)
        return result

    if stats is not None:
        stats.record(label, policy.max_attempts)
    log_event(
        logger,
        level="error",
        event="confirm_retries_exhausted",
        message=f"{label} failed {policy.max_attempts} time(s), giving up",
        label=label,
        max_attempts=policy.max_attempts,
        error=str(last),
    )
    raise RetriesExhausted(last, policy.max_attempts)
