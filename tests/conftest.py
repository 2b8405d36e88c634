"""
Pytest configuration and shared fixtures for the confirmation flow tests.
"""

import asyncio
import os

# the app module builds its settings at import time
os.environ.setdefault("ORDERSTORE_BACKEND", "memory")
os.environ.setdefault("CONFIRM_BASE_DELAY_MS", "0")
os.environ.setdefault("CONFIRM_MAX_DELAY_MS", "0")

import pytest

from coursepay.engine import TransitionEngine
from coursepay.model.order import OrderSnapshot
from coursepay.model.orderstore import MemoryOrderStore
from coursepay.retry import RetryPolicy


def make_order(order_id="ord-001", status="pending", payment_status=None,
               version=0):
    if payment_status is None:
        payment_status = {"completed": "paid"}.get(status, status)
    return OrderSnapshot(
        id=order_id,
        status=status,
        payment_status=payment_status,
        version_token=version,
        updated_at=1700000000.0,
        created_at=1700000000.0,
        order_number="CP-2025-001",
        program_title="Young Coders Bootcamp",
        program_slug="young-coders",
        email="student@example.com",
        total_amount=149900,
    )


def seed(store, *snaps):
    for snap in snaps:
        asyncio.run(store.seed_order(snap))
    return store


@pytest.fixture
def policy():
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def store():
    return seed(MemoryOrderStore(), make_order("ord-001"))


@pytest.fixture
def engine(store, policy):
    return TransitionEngine(store, policy)
