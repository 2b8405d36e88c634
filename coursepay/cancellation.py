from __future__ import annotations

import asyncio
import contextlib
from typing import Awaitable, Optional, TypeVar

from .errors import Aborted

T = TypeVar("T")


class CancelToken:
    """
    Stop signal for one confirmation attempt.

    Store calls and backoff sleeps go through `guard()` / `sleep()`; once
    `cancel()` is called they stop promptly with `Aborted` and the pending
    call is cancelled rather than left running in the background.
    """

    __slots__ = ("_event", "reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "disposed") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Aborted(self.reason)

    async def guard(self, aw: Awaitable[T]) -> T:
        if self._event.is_set():
            if asyncio.iscoroutine(aw):
                aw.close()
            raise Aborted(self.reason)
        task = asyncio.ensure_future(aw)
        stop = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait(
                {task, stop}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            stop.cancel()
        if task.done():
            return task.result()
        task.cancel()
        # the call lost the race with cancel(); its outcome is moot
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await task
        raise Aborted(self.reason)

    async def sleep(self, delay: float) -> None:
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise Aborted(self.reason)


async def guarded(token: Optional[CancelToken], aw: Awaitable[T]) -> T:
    if token is None:
        return await aw
    return await token.guard(aw)


async def pause(token: Optional[CancelToken], delay: float) -> None:
    if token is None:
        await asyncio.sleep(delay)
        return
    await token.sleep(delay)
