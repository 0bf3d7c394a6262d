"""
ConsistencyRouter tests: the dual-write path, read routing and fallback,
primary/secondary failure handling and per-ingredient serialization.

Primary is the document store, secondary the relational store, both wrapped
in FlakyStore so a test can take either one down.
"""

import asyncio
from decimal import Decimal

import pytest

from stock_config.schema import ReadPreference, RoutingFlags
from stock_kernel.exceptions import (
    IngredientNotFoundError,
    InsufficientStockError,
    PrimaryWriteFailedError,
    StoreUnavailableError,
    ValidationError,
)
from stock_services.consistency_records import InMemoryConsistencyLog, WriteState
from stock_services.consistency_router import ConsistencyRouter
from stock_services.stores.base import Collection
from stock_services.stores.records import ingredient_to_record

from tests.builders import OUTLET, START, consumption, make_ingredient, receipt


async def _stock(router, key="r1", quantity="10"):
    await router.register_ingredient(make_ingredient("milk"))
    result = await router.write(receipt(key, quantity))
    await router.wait_for_mirrors()
    return result


# =============================================================================
# Happy path
# =============================================================================


class TestDualWrite:
    def test_write_lands_in_both_stores(self, router, document_store, relational_store):
        async def scenario():
            result = await _stock(router)
            primary = await document_store.get(Collection.INGREDIENTS, "milk")
            secondary = await relational_store.get(Collection.INGREDIENTS, "milk")
            movements = await relational_store.query(Collection.MOVEMENTS, ingredient_id="milk")
            return result, primary, secondary, movements

        result, primary, secondary, movements = asyncio.run(scenario())

        assert result.new_stock == Decimal("10")
        assert result.version == 2
        assert result.state is WriteState.PRIMARY_COMMITTED
        assert primary["current_stock"] == Decimal("10")
        assert secondary["current_stock"] == Decimal("10")
        assert secondary["version"] == 2
        assert [m["idempotency_key"] for m in movements] == ["r1"]

    def test_consistency_record_and_outcome(self, router):
        asyncio.run(_stock(router))

        record = router.reconciliation_status("milk")
        assert record.is_consistent
        assert record.last_written_primary_version == 2
        assert router.operation_status("r1").state is WriteState.SECONDARY_COMMITTED
        assert router.operation_status("register:milk").state is WriteState.SECONDARY_COMMITTED

    def test_idempotent_write_replayed(self, router, document_store):
        async def scenario():
            first = await _stock(router)
            second = await router.write(receipt("r1", "10"))
            movements = await document_store.query(Collection.MOVEMENTS, ingredient_id="milk")
            return first, second, movements

        first, second, movements = asyncio.run(scenario())

        assert second.replayed
        assert second.version == first.version
        assert second.new_stock == Decimal("10")
        assert len(movements) == 1

    def test_register_twice_is_replay(self, router):
        async def scenario():
            await router.register_ingredient(make_ingredient("milk"))
            again = await router.register_ingredient(make_ingredient("milk"))
            await router.wait_for_mirrors()
            return again

        again = asyncio.run(scenario())

        assert again.replayed
        assert again.version == 1

    def test_audit_adjust_mirrored(self, router, relational_store):
        async def scenario():
            await _stock(router, quantity="12")
            result = await router.audit_adjust("milk", Decimal("9"), "auditor", "audit-1")
            await router.wait_for_mirrors()
            secondary = await relational_store.get(Collection.INGREDIENTS, "milk")
            return result, secondary

        result, secondary = asyncio.run(scenario())

        assert result.movement.delta == Decimal("-3")
        assert result.movement.timestamp == START
        assert secondary["current_stock"] == Decimal("9")

    def test_update_cost_appends_price_history(self, router, relational_store):
        async def scenario():
            await _stock(router)
            result = await router.update_cost("milk", Decimal("1.75"), "supplier increase", "p1")
            await router.wait_for_mirrors()
            prices = await relational_store.query(Collection.PRICE_HISTORY, ingredient_id="milk")
            return result, prices

        result, prices = asyncio.run(scenario())

        assert result.ingredient.last_cost == Decimal("1.75")
        assert [p["price"] for p in prices] == [Decimal("1.2"), Decimal("1.75")]
        assert prices[1]["movement_id"] is None

    def test_update_ingredient_mirrored(self, router, relational_store):
        async def scenario():
            await _stock(router)
            result = await router.update_ingredient(
                "milk", {"minimum_stock": Decimal("12"), "name": "Whole milk"}, "u1"
            )
            await router.wait_for_mirrors()
            secondary = await relational_store.get(Collection.INGREDIENTS, "milk")
            low = await router.low_stock(OUTLET)
            return result, secondary, low

        result, secondary, low = asyncio.run(scenario())

        assert result.version == 3
        assert result.state is WriteState.PRIMARY_COMMITTED
        assert result.new_stock == Decimal("10")
        assert secondary["minimum_stock"] == Decimal("12")
        assert secondary["name"] == "Whole milk"
        assert secondary["version"] == 3
        assert [i.id for i in low] == ["milk"]
        assert router.operation_status("u1").state is WriteState.SECONDARY_COMMITTED

    def test_update_ingredient_refuses_stock_change(self, router, document_store):
        async def scenario():
            await _stock(router)
            with pytest.raises(ValidationError) as exc_info:
                await router.update_ingredient("milk", {"current_stock": Decimal("50")}, "u1")
            record = await document_store.get(Collection.INGREDIENTS, "milk")
            return exc_info.value, record

        error, record = asyncio.run(scenario())

        assert error.field == "current_stock"
        assert record["current_stock"] == Decimal("10")
        assert record["version"] == 2
        assert router.operation_status("u1") is None

    def test_matching_count_recorded_as_unchanged(self, router):
        async def scenario():
            await _stock(router)
            counted = await router.audit_adjust("milk", Decimal("10"), "auditor", "count-1")
            await router.write(consumption("c1", "2"))
            again = await router.audit_adjust("milk", Decimal("10"), "auditor", "count-1")
            await router.wait_for_mirrors()
            return counted, again

        counted, again = asyncio.run(scenario())

        assert counted.state is WriteState.UNCHANGED
        assert counted.movement is None
        assert again.replayed
        assert again.new_stock == Decimal("10")
        assert router.ledger.project_stock("milk") == Decimal("8")
        outcome = router.operation_status("count-1")
        assert outcome.state is WriteState.UNCHANGED
        assert outcome.version == 2
        assert outcome.new_stock == Decimal("10")


# =============================================================================
# Rejections
# =============================================================================


class TestRejections:
    def test_overdraft_raises_and_writes_nothing(self, router, document_store):
        async def scenario():
            await _stock(router, quantity="5")
            with pytest.raises(InsufficientStockError):
                await router.write(consumption("c1", "8"))
            return await document_store.get(Collection.INGREDIENTS, "milk")

        primary = asyncio.run(scenario())

        assert primary["current_stock"] == Decimal("5")
        assert router.ledger.project_stock("milk") == Decimal("5")
        assert router.operation_status("c1") is None

    def test_unknown_ingredient(self, router):
        with pytest.raises(IngredientNotFoundError):
            asyncio.run(router.write(receipt("r1", "1", ingredient_id="ghost")))

    def test_key_reuse_raises(self, router):
        async def scenario():
            await _stock(router)
            await router.write(receipt("r1", "11"))

        with pytest.raises(ValidationError):
            asyncio.run(scenario())


# =============================================================================
# Primary failures
# =============================================================================


class TestPrimaryFailure:
    def test_primary_failure_leaves_no_trace_and_retry_succeeds(
        self, router, primary, relational_store
    ):
        async def scenario():
            await router.register_ingredient(make_ingredient("milk"))
            await router.wait_for_mirrors()
            primary.down = True
            with pytest.raises(PrimaryWriteFailedError) as exc_info:
                await router.write(receipt("r1", "10"))
            failed_state = router.operation_status("r1").state
            stock_after_failure = router.ledger.project_stock("milk")
            secondary_after_failure = await relational_store.query(
                Collection.MOVEMENTS, ingredient_id="milk"
            )

            primary.down = False
            retried = await router.write(receipt("r1", "10"))
            await router.wait_for_mirrors()
            return (
                exc_info.value,
                failed_state,
                stock_after_failure,
                secondary_after_failure,
                retried,
            )

        error, failed_state, stock, secondary, retried = asyncio.run(scenario())

        assert error.idempotency_key == "r1"
        assert failed_state is WriteState.PRIMARY_FAILED
        assert stock == Decimal("0")
        assert secondary == []
        assert not retried.replayed
        assert retried.version == 2
        assert retried.new_stock == Decimal("10")

    def test_primary_unavailable_on_first_load(self, router, primary):
        primary.down = True

        with pytest.raises(PrimaryWriteFailedError):
            asyncio.run(router.write(receipt("r1", "1")))

    def test_primary_timeout(self, primary, secondary, consistency_log, flags, clock):
        class SlowScope:
            def __init__(self, inner):
                self._inner = inner
                self.name = inner.name

            def __getattr__(self, item):
                return getattr(self._inner, item)

            async def run_scoped(self, operations):
                await asyncio.sleep(1)
                return await self._inner.run_scoped(operations)

        router = ConsistencyRouter(
            primary=SlowScope(primary),
            secondary=secondary,
            consistency_log=consistency_log,
            flags=flags,
            clock=clock,
            timeout_seconds=0.05,
        )

        with pytest.raises(PrimaryWriteFailedError) as exc_info:
            asyncio.run(router.register_ingredient(make_ingredient("milk")))

        assert "timed out" in str(exc_info.value)
        assert not router.ledger.is_loaded("milk")
        assert router.operation_status("register:milk").state is WriteState.PRIMARY_FAILED


# =============================================================================
# Secondary failures
# =============================================================================


class TestSecondaryFailure:
    def test_secondary_failure_is_absorbed(self, router, secondary, captured_logs):
        async def scenario():
            await router.register_ingredient(make_ingredient("milk"))
            await router.wait_for_mirrors()
            secondary.down = True
            result = await router.write(receipt("r1", "10"))
            await router.wait_for_mirrors()
            return result

        result = asyncio.run(scenario())

        assert result.new_stock == Decimal("10")
        record = router.reconciliation_status("milk")
        assert record.pending_repair
        assert record.last_written_primary_version == 2
        assert record.last_written_secondary_version == 1
        assert "connection refused" in record.last_error
        assert router.operation_status("r1").state is WriteState.SECONDARY_FAILED
        assert any(r["message"] == "secondary_write_failed" for r in captured_logs())

    def test_later_mirror_does_not_clear_pending(self, router, secondary):
        async def scenario():
            await router.register_ingredient(make_ingredient("milk"))
            await router.wait_for_mirrors()
            secondary.down = True
            await router.write(receipt("r1", "10"))
            await router.wait_for_mirrors()
            secondary.down = False
            await router.write(receipt("r2", "1"))
            await router.wait_for_mirrors()

        asyncio.run(scenario())

        record = router.reconciliation_status("milk")
        assert record.pending_repair
        assert record.last_written_secondary_version == 3


class UnreachableLog(InMemoryConsistencyLog):
    """In-memory log whose storage fails while ``down`` is True."""

    def __init__(self):
        super().__init__()
        self.down = False

    def _check(self, operation):
        if self.down:
            raise StoreUnavailableError("consistency_log", operation, "disk I/O error")

    def get(self, entity_id):
        self._check("get")
        return super().get(entity_id)

    def save(self, record):
        self._check("save")
        super().save(record)

    def get_outcome(self, idempotency_key):
        self._check("get_outcome")
        return super().get_outcome(idempotency_key)

    def save_outcome(self, outcome):
        self._check("save_outcome")
        super().save_outcome(outcome)


class TestConsistencyLogOutage:
    @pytest.fixture
    def log(self):
        return UnreachableLog()

    @pytest.fixture
    def logged_router(self, primary, secondary, log, flags, clock):
        return ConsistencyRouter(
            primary=primary, secondary=secondary, consistency_log=log, flags=flags, clock=clock
        )

    def test_write_succeeds_while_log_is_down(
        self, logged_router, log, document_store, relational_store, captured_logs
    ):
        async def scenario():
            await _stock(logged_router)
            log.down = True
            result = await logged_router.write(consumption("c1", "4"))
            await logged_router.wait_for_mirrors()
            primary = await document_store.get(Collection.INGREDIENTS, "milk")
            secondary = await relational_store.get(Collection.INGREDIENTS, "milk")
            return result, primary, secondary

        result, primary, secondary = asyncio.run(scenario())

        assert result.new_stock == Decimal("6")
        assert primary["current_stock"] == Decimal("6")
        assert secondary["current_stock"] == Decimal("6")
        failed = [r for r in captured_logs() if r["message"] == "consistency_log_failed"]
        assert {r["action"] for r in failed} >= {"advance_outcome", "record_primary_write"}

    def test_mirror_failure_with_log_down_is_absorbed(
        self, logged_router, log, secondary, captured_logs
    ):
        async def scenario():
            await _stock(logged_router)
            log.down = True
            secondary.down = True
            result = await logged_router.write(consumption("c1", "4"))
            await logged_router.wait_for_mirrors()
            return result

        result = asyncio.run(scenario())

        assert result.new_stock == Decimal("6")
        assert logged_router.mirrors_in_flight == 0
        messages = [r["message"] for r in captured_logs()]
        assert "secondary_write_failed" in messages
        failed = [r for r in captured_logs() if r["message"] == "consistency_log_failed"]
        assert "record_secondary_failure" in {r["action"] for r in failed}


# =============================================================================
# Reads
# =============================================================================


class TestReads:
    def test_read_from_primary(self, router):
        async def scenario():
            await _stock(router)
            return await router.read("milk")

        ingredient = asyncio.run(scenario())

        assert ingredient.current_stock == Decimal("10")
        assert ingredient.last_cost == Decimal("1.20")

    def test_fallback_to_secondary_on_error(self, router, primary, captured_logs):
        async def scenario():
            await _stock(router)
            primary.down = True
            return await router.read("milk")

        ingredient = asyncio.run(scenario())

        assert ingredient.current_stock == Decimal("10")
        assert any(r["message"] == "read_fallback" for r in captured_logs())

    def test_none_is_authoritative(self, router, relational_store, secondary):
        async def scenario():
            await relational_store.put(
                Collection.INGREDIENTS, "ghost", ingredient_to_record(make_ingredient("ghost"), 1)
            )
            calls_before = secondary.calls
            result = await router.read("ghost")
            return result, secondary.calls - calls_before

        result, secondary_calls = asyncio.run(scenario())

        assert result is None
        assert secondary_calls == 0

    def test_both_stores_down(self, router, primary, secondary):
        primary.down = True
        secondary.down = True

        with pytest.raises(StoreUnavailableError):
            asyncio.run(router.read("milk"))

    def test_read_preference_applies_to_next_operation(self, router, flags, relational_store):
        async def scenario():
            await _stock(router)
            record = await relational_store.get(Collection.INGREDIENTS, "milk")
            await relational_store.put(
                Collection.INGREDIENTS, "milk", {**record, "name": "Milk (relational)"}
            )
            before = await router.read("milk")
            flags.set(RoutingFlags(read_preference=ReadPreference.SECONDARY))
            after = await router.read("milk")
            return before, after

        before, after = asyncio.run(scenario())

        assert before.name == "Milk"
        assert after.name == "Milk (relational)"

    def test_list_ingredients_by_outlet(self, router):
        async def scenario():
            await router.register_ingredient(make_ingredient("milk"))
            await router.register_ingredient(make_ingredient("butter"))
            await router.register_ingredient(make_ingredient("yeast", outlet_id="outlet-2"))
            await router.wait_for_mirrors()
            return await router.list_ingredients(OUTLET)

        assert [i.id for i in asyncio.run(scenario())] == ["butter", "milk"]

    def test_inventory_status_and_alerts(self, router):
        async def scenario():
            await _stock(router, quantity="3")
            status = await router.inventory_status("milk")
            low = await router.low_stock(OUTLET)
            expiring = await router.expiring_batches(OUTLET, days_ahead=7)
            await router.wait_for_mirrors()
            return status, low, expiring

        status, low, expiring = asyncio.run(scenario())

        assert status.current_stock == Decimal("3")
        assert [m.idempotency_key for m in status.recent_movements] == ["r1"]
        # minimum_stock is 2, stock 3
        assert low == ()
        assert [r.ingredient.id for r in expiring] == ["milk"]

    def test_inventory_status_unknown(self, router):
        with pytest.raises(IngredientNotFoundError):
            asyncio.run(router.inventory_status("ghost"))


# =============================================================================
# Hydration and serialization
# =============================================================================


class TestHydration:
    def test_new_router_rebuilds_from_primary(
        self, router, primary, secondary, consistency_log, flags, clock
    ):
        asyncio.run(_stock(router))
        restarted = ConsistencyRouter(
            primary=primary,
            secondary=secondary,
            consistency_log=consistency_log,
            flags=flags,
            clock=clock,
        )

        async def scenario():
            result = await restarted.write(consumption("c1", "4"))
            replay = await restarted.write(receipt("r1", "10"))
            await restarted.wait_for_mirrors()
            return result, replay

        result, replay = asyncio.run(scenario())

        assert result.version == 3
        assert result.new_stock == Decimal("6")
        assert replay.replayed

    def test_matching_count_still_replayed_after_restart(
        self, router, primary, secondary, consistency_log, flags, clock
    ):
        async def first_run():
            await _stock(router)
            await router.audit_adjust("milk", Decimal("10"), "auditor", "count-1")

        asyncio.run(first_run())
        restarted = ConsistencyRouter(
            primary=primary,
            secondary=secondary,
            consistency_log=consistency_log,
            flags=flags,
            clock=clock,
        )

        async def second_run():
            await restarted.write(consumption("c1", "2"))
            again = await restarted.audit_adjust("milk", Decimal("10"), "auditor", "count-1")
            await restarted.wait_for_mirrors()
            return again

        again = asyncio.run(second_run())

        assert again.replayed
        assert again.movement is None
        assert again.version == 2
        assert restarted.ledger.project_stock("milk") == Decimal("8")
        assert len(restarted.ledger.get_movements("milk")) == 2

    def test_profile_edit_survives_restart(
        self, router, primary, secondary, consistency_log, flags, clock, relational_store
    ):
        async def first_run():
            await _stock(router)
            await router.update_ingredient("milk", {"minimum_stock": Decimal("5")}, "u1")
            await router.wait_for_mirrors()

        asyncio.run(first_run())
        restarted = ConsistencyRouter(
            primary=primary,
            secondary=secondary,
            consistency_log=consistency_log,
            flags=flags,
            clock=clock,
        )

        async def second_run():
            result = await restarted.write(consumption("c1", "4"))
            await restarted.wait_for_mirrors()
            mirrored = await relational_store.get(Collection.INGREDIENTS, "milk")
            return result, mirrored

        result, mirrored = asyncio.run(second_run())

        assert result.version == 4
        assert result.ingredient.minimum_stock == Decimal("5")
        assert mirrored["version"] == 4
        assert mirrored["current_stock"] == Decimal("6")
        assert restarted.reconciliation_status("milk").is_consistent


class TestSerialization:
    def test_concurrent_consumption_never_overdraws(self, router, document_store):
        async def scenario():
            await _stock(router)
            results = await asyncio.gather(
                *(router.write(consumption(f"c{i}", "1")) for i in range(11)),
                return_exceptions=True,
            )
            await router.wait_for_mirrors()
            primary = await document_store.get(Collection.INGREDIENTS, "milk")
            return results, primary

        results, primary = asyncio.run(scenario())

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], InsufficientStockError)
        assert primary["current_stock"] == Decimal("0")
        assert sorted(r.version for r in results if not isinstance(r, Exception)) == list(
            range(3, 13)
        )
