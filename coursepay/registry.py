from __future__ import annotations

import uuid
from collections import OrderedDict
from typing import Optional, Tuple

from .helpers import now_ts
from .orchestrator import ConfirmationOrchestrator


class ViewRegistry:
    """
    Live confirmation views, keyed by an opaque view id.

    Lets a rendered page come back for a manual retry or a dispose. Views
    expire after `ttl_seconds`; the oldest are evicted past `max_views`.
    Expired and evicted views are disposed.
    """

    def __init__(self, ttl_seconds: float = 900, max_views: int = 10_000):
        self.ttl = ttl_seconds
        self.max_views = max(1, max_views)
        self._views: "OrderedDict[str, Tuple[float, ConfirmationOrchestrator]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._views)

    def add(self, orch: ConfirmationOrchestrator,
            view_id: Optional[str] = None) -> str:
        self.sweep()
        view_id = view_id or uuid.uuid4().hex
        old = self._views.pop(view_id, None)
        if old is not None:
            old[1].dispose()
        self._views[view_id] = (now_ts(), orch)
        while len(self._views) > self.max_views:
            _, (_, evicted) = self._views.popitem(last=False)
            evicted.dispose()
        return view_id

    def get(self, view_id: str) -> ConfirmationOrchestrator:
        self.sweep()
        return self._views[view_id][1]

    def discard(self, view_id: str) -> bool:
        entry = self._views.pop(view_id, None)
        if entry is None:
            return False
        entry[1].dispose()
        return True

    def sweep(self) -> int:
        cutoff = now_ts() - self.ttl
        expired = [vid for vid, (ts, _) in self._views.items() if ts < cutoff]
        for vid in expired:
            self.discard(vid)
        return len(expired)

    def dispose_all(self) -> None:
        for vid in list(self._views):
            self.discard(vid)
