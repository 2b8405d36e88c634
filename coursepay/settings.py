from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or value == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or value == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(slots=True)
class Settings:
    database_url: str
    orderstore_backend: str
    redis_url: str
    redis_max_conn: int
    confirm_max_attempts: int
    confirm_base_delay_s: float
    confirm_max_delay_s: float
    confirm_max_conflict_rounds: int
    view_ttl_seconds: int
    view_max: int
    session_secret: str
    log_level: str
    site_name: str
    home_url: str
    seed_demo_orders: bool

    @classmethod
    def from_env(cls) -> "Settings":
        backend = os.getenv("ORDERSTORE_BACKEND", "pg").strip().lower()
        if backend not in {"pg", "redis", "memory"}:
            backend = "pg"
        return cls(
            database_url=os.getenv(
                "DATABASE_URL", "sqlite:///./coursepay.db"
            ),
            orderstore_backend=backend,
            redis_url=os.getenv("REDIS_URL", "redis://127.0.0.1:6379"),
            redis_max_conn=max(1, to_int(os.getenv("REDIS_MAX_CONN"), 64)),
            confirm_max_attempts=max(
                1, to_int(os.getenv("CONFIRM_MAX_ATTEMPTS"), 3)
            ),
            confirm_base_delay_s=max(
                0.0, to_float(os.getenv("CONFIRM_BASE_DELAY_MS"), 1000) / 1000
            ),
            confirm_max_delay_s=max(
                0.0, to_float(os.getenv("CONFIRM_MAX_DELAY_MS"), 5000) / 1000
            ),
            confirm_max_conflict_rounds=max(
                1, to_int(os.getenv("CONFIRM_MAX_CONFLICT_ROUNDS"), 5)
            ),
            view_ttl_seconds=max(
                1, to_int(os.getenv("VIEW_TTL_SECONDS"), 15 * 60)
            ),
            view_max=max(1, to_int(os.getenv("VIEW_MAX"), 10_000)),
            session_secret=os.getenv(
                "SESSION_SECRET", "dev-secret-change-me"
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            site_name=os.getenv("SITE_NAME", "CoursePay"),
            home_url=os.getenv("HOME_URL", "/"),
            seed_demo_orders=to_bool(os.getenv("SEED_DEMO_ORDERS"), False),
        )
