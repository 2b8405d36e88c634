import asyncio

import pytest

from conftest import make_order, seed
from coursepay.engine import TransitionEngine
from coursepay.errors import (
    ConflictLimitReached, MissingOrderId, OrderNotFound, RetriesExhausted,
    VersionConflict,
)
from coursepay.model.orderstore import MemoryOrderStore
from coursepay.retry import RetryPolicy


def confirm(engine, order_id, desired):
    return asyncio.run(engine.confirm(order_id, desired))


class TestScenarios:
    def test_pending_order_is_completed_with_one_write(self, engine, store):
        res = confirm(engine, "ord-001", "completed")
        assert res.snapshot.status == "completed"
        assert res.snapshot.payment_status == "paid"
        assert res.snapshot.version_token == 1
        assert res.replayed is False
        assert res.writes == 1
        assert store.writes == 1

    def test_replay_reads_and_returns_without_writing(self, engine, store):
        first = confirm(engine, "ord-001", "completed")
        second = confirm(engine, "ord-001", "completed")
        assert second.snapshot == first.snapshot
        assert second.replayed is True
        assert second.writes == 0
        assert store.write_attempts == 1
        assert store.reads == 2

    def test_concurrent_callers_converge_on_one_write(self, policy):
        store = seed(MemoryOrderStore(latency=0.01), make_order("ord-001"))
        engine = TransitionEngine(store, policy)

        async def go():
            return await asyncio.gather(
                engine.confirm("ord-001", "completed"),
                engine.confirm("ord-001", "completed"),
            )

        a, b = asyncio.run(go())
        assert store.writes == 1
        assert store.write_attempts == 2
        assert store.conflicts == 1
        assert a.snapshot == b.snapshot
        assert a.snapshot.status == "completed"
        assert a.snapshot.version_token == 1
        assert sorted([a.writes, b.writes]) == [0, 1]
        loser = a if a.writes == 0 else b
        assert loser.replayed is True
        assert loser.conflicts == 1

    def test_transient_failures_then_success(self, engine, store):
        store.fail_next("read", 2)
        res = confirm(engine, "ord-001", "completed")
        assert res.snapshot.status == "completed"
        assert res.attempts == 3
        assert store.reads == 3
        assert store.writes == 1

    def test_missing_order_id_makes_no_calls(self, engine, store):
        for blank in (None, "", "   "):
            with pytest.raises(MissingOrderId):
                confirm(engine, blank, "completed")
        assert store.reads == 0
        assert store.write_attempts == 0


class TestProperties:
    def test_completed_order_is_never_downgraded(self, policy):
        store = seed(MemoryOrderStore(), make_order("ord-002", "completed"))
        engine = TransitionEngine(store, policy)
        res = confirm(engine, "ord-002", "failed")
        assert res.snapshot.status == "completed"
        assert res.overridden is True
        assert res.replayed is True
        assert store.write_attempts == 0
        assert store.get("ord-002").status == "completed"

    def test_failed_order_is_not_flipped_to_completed(self, policy):
        store = seed(MemoryOrderStore(), make_order("ord-003", "failed"))
        engine = TransitionEngine(store, policy)
        res = confirm(engine, "ord-003", "completed")
        assert res.snapshot.status == "failed"
        assert res.overridden is True
        assert store.write_attempts == 0

    def test_paid_mirror_counts_as_completed(self, policy):
        order = make_order("ord-004", "pending", payment_status="completed")
        store = seed(MemoryOrderStore(), order)
        engine = TransitionEngine(store, policy)
        res = confirm(engine, "ord-004", "completed")
        assert res.replayed is True
        assert res.overridden is False
        assert store.write_attempts == 0

    def test_failure_path_writes_failed_mirror(self, engine, store):
        res = confirm(engine, "ord-001", "failed")
        assert res.snapshot.status == "failed"
        assert res.snapshot.payment_status == "failed"
        assert res.writes == 1

    def test_exhausted_read_never_attempts_a_write(self, engine, store):
        store.fail_next("read", 10)
        with pytest.raises(RetriesExhausted) as ei:
            confirm(engine, "ord-001", "completed")
        assert ei.value.attempts == 3
        assert store.reads == 3
        assert store.write_attempts == 0

    def test_write_retry_has_its_own_budget(self, engine, store):
        store.fail_next("read", 2)
        store.fail_next("update", 2)
        res = confirm(engine, "ord-001", "completed")
        assert res.writes == 1
        assert res.attempts == 3
        assert store.reads == 3
        assert store.write_attempts == 3

    def test_unknown_order_is_fatal_and_not_retried(self, engine, store):
        with pytest.raises(OrderNotFound):
            confirm(engine, "nope", "completed")
        assert store.reads == 1

    def test_unknown_outcome_is_rejected(self, engine):
        with pytest.raises(ValueError):
            confirm(engine, "ord-001", "refunded")


class TestConflicts:
    def test_version_bump_without_status_change_rereads_and_writes(
        self, policy
    ):
        class TouchedOnce(MemoryOrderStore):
            touched = False

            async def conditional_update(self, order_id, fields,
                                         expected_version):
                if not self.touched:
                    self.touched = True
                    self.touch(order_id)
                return await super().conditional_update(
                    order_id, fields, expected_version
                )

        store = seed(TouchedOnce(), make_order("ord-001"))
        engine = TransitionEngine(store, policy)
        res = confirm(engine, "ord-001", "completed")
        assert res.conflicts == 1
        assert res.writes == 1
        assert res.snapshot.version_token == 2
        assert store.reads == 2

    def test_endless_conflicts_are_bounded(self, policy):
        class AlwaysMoved(MemoryOrderStore):
            async def conditional_update(self, order_id, fields,
                                         expected_version):
                self.write_attempts += 1
                raise VersionConflict(order_id, expected_version)

        store = seed(AlwaysMoved(), make_order("ord-001"))
        engine = TransitionEngine(store, policy, max_conflict_rounds=3)
        with pytest.raises(ConflictLimitReached) as ei:
            confirm(engine, "ord-001", "completed")
        assert ei.value.rounds == 3
        assert isinstance(ei.value, RetriesExhausted)
        assert store.write_attempts == 3
        # initial read plus one re-read per conflict
        assert store.reads == 4

    def test_losing_writer_rereads_even_with_a_single_round(self, policy):
        store = seed(MemoryOrderStore(latency=0.01), make_order("ord-001"))
        engine = TransitionEngine(store, policy, max_conflict_rounds=1)

        async def go():
            return await asyncio.gather(
                engine.confirm("ord-001", "completed"),
                engine.confirm("ord-001", "completed"),
            )

        a, b = asyncio.run(go())
        assert a.snapshot == b.snapshot
        assert a.snapshot.status == "completed"
        assert store.writes == 1
        loser = a if a.writes == 0 else b
        assert loser.replayed is True
        assert loser.conflicts == 1

    def test_mixed_outcomes_race_to_a_single_terminal_state(self):
        policy = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)
        store = seed(MemoryOrderStore(latency=0.01), make_order("ord-001"))
        engine = TransitionEngine(store, policy)

        async def go():
            return await asyncio.gather(
                engine.confirm("ord-001", "completed"),
                engine.confirm("ord-001", "failed"),
                engine.confirm("ord-001", "completed"),
            )

        results = asyncio.run(go())
        final = store.get("ord-001")
        assert store.writes == 1
        assert {r.snapshot.status for r in results} == {final.status}
