import asyncio

import pytest
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

from conftest import make_order
from coursepay.engine import TransitionEngine
from coursepay.errors import OrderNotFound, TransientStoreError, VersionConflict
from coursepay.infra.sql import make_async_engine
from coursepay.model.orderstore import (
    MemoryOrderStore, RedisOrderStore, SqlOrderStore, create_schema,
    new_store,
)
from coursepay.retry import RetryPolicy

PAID = {"status": "completed", "payment_status": "paid"}


class TestMemoryStore:
    def test_conditional_update_bumps_version(self):
        async def go():
            store = MemoryOrderStore()
            await store.seed_order(make_order("ord-001"))
            snap = await store.read_order("ord-001")
            updated = await store.conditional_update("ord-001", PAID, 0)
            with pytest.raises(VersionConflict):
                await store.conditional_update("ord-001", PAID, 0)
            return snap, updated, store

        snap, updated, store = asyncio.run(go())
        assert snap.version_token == 0
        assert updated.version_token == 1
        assert updated.status == "completed"
        assert updated.updated_at > snap.updated_at
        # display fields survive the write
        assert updated.program_title == snap.program_title
        assert store.writes == 1
        assert store.conflicts == 1

    def test_rejects_non_status_fields(self):
        async def go():
            store = MemoryOrderStore()
            await store.seed_order(make_order("ord-001"))
            await store.conditional_update(
                "ord-001", {"total_amount": 0}, 0
            )

        with pytest.raises(ValueError):
            asyncio.run(go())

    def test_injected_faults(self):
        async def go():
            store = MemoryOrderStore()
            await store.seed_order(make_order("ord-001"))
            store.fail_next("update")
            with pytest.raises(TransientStoreError):
                await store.conditional_update("ord-001", PAID, 0)
            with pytest.raises(OrderNotFound):
                await store.read_order("ord-404")
            return await store.conditional_update("ord-001", PAID, 0)

        assert asyncio.run(go()).status == "completed"

    def test_unknown_fault_operation(self):
        with pytest.raises(ValueError):
            MemoryOrderStore().fail_next("delete")


class TestSqlStore:
    def test_round_trip_on_sqlite(self, tmp_path):
        url = f"sqlite:///{tmp_path}/orders.db"

        async def go():
            engine, gated = make_async_engine(url)
            async with engine.begin() as conn:
                await create_schema(conn)
            store = new_store(backend="pg", engine=engine, gated=gated)
            assert isinstance(store, SqlOrderStore)
            try:
                await store.seed_order(make_order("ord-001"))
                snap = await store.read_order("ord-001")
                updated = await store.conditional_update("ord-001", PAID, 0)
                with pytest.raises(VersionConflict):
                    await store.conditional_update("ord-001", PAID, 0)
                with pytest.raises(OrderNotFound):
                    await store.read_order("ord-404")
                with pytest.raises(OrderNotFound):
                    await store.conditional_update("ord-404", PAID, 0)
                return snap, updated
            finally:
                await store.close()

        snap, updated = asyncio.run(go())
        assert snap.status == "pending"
        assert snap.email == "student@example.com"
        assert updated.version_token == snap.version_token + 1
        assert updated.status == "completed"
        assert updated.payment_status == "paid"

    def test_engine_over_sqlite_is_idempotent(self, tmp_path):
        url = f"sqlite:///{tmp_path}/orders.db"
        policy = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)

        async def go():
            engine, gated = make_async_engine(url)
            async with engine.begin() as conn:
                await create_schema(conn)
            store = SqlOrderStore(engine=engine, gated=gated)
            try:
                await store.seed_order(make_order("ord-001"))
                transitions = TransitionEngine(store, policy)
                first = await transitions.confirm("ord-001", "completed")
                again = await transitions.confirm("ord-001", "failed")
                return first, again
            finally:
                await store.close()

        first, again = asyncio.run(go())
        assert first.writes == 1
        assert again.writes == 0
        assert again.overridden is True
        assert again.snapshot.status == "completed"


class TestRedisStore:
    @staticmethod
    def run(body):
        async def go():
            store = RedisOrderStore(
                r=FakeRedis(server=FakeServer(), decode_responses=True)
            )
            await store.seed_order(make_order("ord-001"))
            try:
                return await body(store)
            finally:
                await store.close()

        return asyncio.run(go())

    def test_seed_and_read(self):
        async def body(store):
            return await store.read_order("ord-001")

        snap = self.run(body)
        assert snap.status == "pending"
        assert snap.version_token == 0
        assert snap.total_amount == 149900
        assert snap.program_slug == "young-coders"

    def test_conditional_update_and_stale_version(self):
        async def body(store):
            updated = await store.conditional_update("ord-001", PAID, 0)
            with pytest.raises(VersionConflict):
                await store.conditional_update("ord-001", PAID, 0)
            return updated, await store.read_order("ord-001")

        updated, stored = self.run(body)
        assert updated.version_token == 1
        assert updated.status == "completed"
        assert updated.payment_status == "paid"
        assert stored == updated

    def test_missing_hash_is_not_found(self):
        async def body(store):
            with pytest.raises(OrderNotFound):
                await store.read_order("ord-404")
            with pytest.raises(OrderNotFound):
                await store.conditional_update("ord-404", PAID, 0)

        self.run(body)

    def test_concurrent_swaps_let_exactly_one_through(self):
        async def body(store):
            return await asyncio.gather(
                store.conditional_update("ord-001", PAID, 0),
                store.conditional_update("ord-001", PAID, 0),
                return_exceptions=True,
            )

        results = self.run(body)
        assert sum(isinstance(r, VersionConflict) for r in results) == 1
        assert [r.version_token for r in results
                if not isinstance(r, Exception)] == [1]

    def test_engine_converges_over_redis(self, policy):
        async def body(store):
            transitions = TransitionEngine(store, policy)
            return await asyncio.gather(
                transitions.confirm("ord-001", "completed"),
                transitions.confirm("ord-001", "failed"),
                transitions.confirm("ord-001", "completed"),
            )

        results = self.run(body)
        assert sum(r.writes for r in results) == 1
        assert len({r.snapshot.status for r in results}) == 1
        assert len({r.snapshot.version_token for r in results}) == 1


class TestFactory:
    def test_memory_backend(self):
        assert isinstance(new_store(backend="memory"), MemoryOrderStore)

    def test_missing_dependencies_are_reported(self):
        with pytest.raises(RuntimeError):
            new_store(backend="pg")
        with pytest.raises(RuntimeError):
            new_store(backend="redis")
        with pytest.raises(RuntimeError):
            new_store(backend="mongo")

    def test_redis_backend_wraps_client(self):
        import redis.asyncio as redis
        r = redis.Redis()
        assert isinstance(new_store(backend="redis", r=r), RedisOrderStore)
