from __future__ import annotations

import statistics
import time
from collections import defaultdict
from typing import Dict, List

# kind -> durations in seconds. Only ever appended to from the event loop.
_TIMINGS: Dict[str, List[float]] = defaultdict(list)

ERROR_SUFFIX = ".error"


def record_timing(kind: str, seconds: float) -> None:
    _TIMINGS[kind].append(float(seconds))


class timeit:
    """Time an awaited block under ``kind``.

        async with timeit("orderstore.read"):
            await store.read_order(order_id)

    A block that raises (including ``Aborted``) is recorded under
    ``kind + ".error"`` so failures don't skew the happy-path numbers.
    """
    __slots__ = ("kind", "_started")

    def __init__(self, kind: str):
        self.kind = kind
        self._started = 0.0

    async def __aenter__(self):
        self._started = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        kind = self.kind if exc_type is None else self.kind + ERROR_SUFFIX
        record_timing(kind, time.perf_counter() - self._started)
        return False


def _percentile(ordered: List[float], q: float) -> float:
    # nearest-rank on an already sorted list
    idx = min(len(ordered) - 1, max(0, round(q * (len(ordered) - 1))))
    return ordered[idx]


def _describe(values: List[float]) -> Dict[str, float]:
    ordered = sorted(values)
    return {
        "n": len(ordered),
        "mean": statistics.fmean(ordered),
        "std": statistics.stdev(ordered) if len(ordered) > 1 else 0.0,
        "p50": _percentile(ordered, 0.50),
        "p95": _percentile(ordered, 0.95),
        "max": ordered[-1],
    }


def timing_summary() -> Dict[str, Dict[str, float]]:
    return {kind: _describe(vals) for kind, vals in _TIMINGS.items() if vals}


def reset_timings() -> None:
    _TIMINGS.clear()
