import time
from datetime import datetime, timezone
from typing import Optional


def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def clean_order_id(order_id: Optional[str]) -> Optional[str]:
    # query params arrive as raw strings; blank means absent
    if order_id is None:
        return None
    order_id = order_id.strip()
    return order_id or None


def format_amount(cents: int, currency: str = "try") -> str:
    return f"{int(cents) / 100:.2f} {currency.upper()}"
